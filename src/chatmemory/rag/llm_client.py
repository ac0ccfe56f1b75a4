"""LiteLLM embedding client with retry and API key validation.

All embedding calls in the indexing pipeline route through this module.
LiteLLM's built-in retry is used (num_retries=3, exponential backoff).
"""

from __future__ import annotations

import logging
import os

import litellm

from chatmemory.errors import ProviderError

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True
litellm.set_verbose = False  # type: ignore[assignment]

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Provider → env var mapping for API key validation
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "voyage": "VOYAGE_API_KEY",
    "together_ai": "TOGETHERAI_API_KEY",
    "ollama": None,  # Local, no key required
}


def validate_api_key(model: str) -> None:
    """Check that the required API key env var is set for *model*.

    Args:
        model: LiteLLM model string in 'provider/model' format.

    Raises:
        EnvironmentError: If the required key is missing from environment.
    """
    provider = model.split("/")[0].lower() if "/" in model else "openai"
    env_var = _PROVIDER_ENV.get(provider)

    if env_var is None:
        return

    if not os.getenv(env_var):
        raise EnvironmentError(
            f"API key not found for provider '{provider}'. "
            f"Set the {env_var} environment variable."
        )


def embed(model: str, text: str, num_retries: int = 3) -> list[float]:
    """Call litellm.embedding() with retry/backoff. Returns embedding vector."""
    response = litellm.embedding(
        model=model,
        input=[text],
        num_retries=num_retries,
    )
    return response.data[0]["embedding"]


class LiteLLMEmbedder:
    """EmbeddingProvider backed by litellm.

    Args:
        model: LiteLLM embedding model string.
        num_retries: Retries on transient provider errors.
        dimensions: Expected vector length; 0 disables the check.
    """

    def __init__(self, model: str, num_retries: int = 3, dimensions: int = 0) -> None:
        self.model = model
        self.num_retries = num_retries
        self.dimensions = dimensions

    def embed(self, text: str) -> list[float]:
        if not text.strip():
            raise ProviderError("cannot embed empty text")
        try:
            vector = embed(self.model, text, num_retries=self.num_retries)
        except Exception as exc:
            raise ProviderError(f"embedding with '{self.model}' failed: {exc}") from exc

        if not vector:
            raise ProviderError(f"'{self.model}' returned an empty embedding")
        if self.dimensions and len(vector) != self.dimensions:
            raise ProviderError(
                f"'{self.model}' returned {len(vector)} dimensions, expected {self.dimensions}"
            )
        return [float(v) for v in vector]

    def __repr__(self) -> str:
        return f"LiteLLMEmbedder(model={self.model!r})"
