"""chatmemory configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site — not in this module)
  2. Environment variables  (CHATMEMORY_*)
  3. Per-project chatmemory.yaml  (next to the database)
  4. Global ~/.chatmemory/config.yaml  (defaults only — no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load() — never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".chatmemory"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "chatmemory.yaml"

# Matches api_key, api-key, api_secret, *_token, token, *_secret, secret,
# password, passwd, credential(s). Does NOT match top_k or max_tokens.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(["rag", "worker", "storage", "logging"])

_LOG_LEVELS: frozenset[str] = frozenset(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])

_TRUE_STRINGS = frozenset(["1", "true", "yes", "on"])
_FALSE_STRINGS = frozenset(["0", "false", "no", "off"])


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file or override contains an invalid value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class RagConfig:
    """Chunking, embedding, and retrieval settings (chatmemory.yaml: rag:).

    Attributes:
        chunk_size: Messages per chunk.
        chunk_overlap: Messages shared by consecutive chunks; must be < chunk_size.
        top_k: Maximum number of chunks returned by a retrieval.
        min_similarity: Cosine similarity floor in [0, 1].
        embedding_model: LiteLLM embedding model string (provider/model format).
        min_chunk_size: A trailing window with fewer messages is dropped.
        history_page_size: Messages fetched per incremental indexing pass.
        rebuild_page_size: Messages fetched when rebuilding a context from scratch.
        merge_min_tokens: Chunks estimated below this many tokens are folded into
            the previous chunk before embedding; 0 disables merging.
    """

    chunk_size: int = 10
    chunk_overlap: int = 2
    top_k: int = 3
    min_similarity: float = 0.5
    embedding_model: str = "openai/text-embedding-3-small"
    min_chunk_size: int = 1
    history_page_size: int = 1_000
    rebuild_page_size: int = 10_000
    merge_min_tokens: int = 0

    def __post_init__(self) -> None:
        if self.chunk_size < 1:
            raise ConfigError(f"rag.chunk_size must be >= 1, got {self.chunk_size}")
        if self.chunk_overlap < 0:
            raise ConfigError(f"rag.chunk_overlap must be >= 0, got {self.chunk_overlap}")
        if self.chunk_overlap >= self.chunk_size:
            raise ConfigError(
                f"rag.chunk_overlap ({self.chunk_overlap}) must be smaller than "
                f"rag.chunk_size ({self.chunk_size})"
            )
        if self.top_k < 1:
            raise ConfigError(f"rag.top_k must be >= 1, got {self.top_k}")
        if not 0.0 <= self.min_similarity <= 1.0:
            raise ConfigError(
                f"rag.min_similarity must be in [0, 1], got {self.min_similarity}"
            )
        if not self.embedding_model.strip():
            raise ConfigError("rag.embedding_model must not be empty")
        if not 1 <= self.min_chunk_size <= self.chunk_size:
            raise ConfigError(
                f"rag.min_chunk_size must be in [1, chunk_size], got {self.min_chunk_size}"
            )
        if self.history_page_size < 1 or self.rebuild_page_size < 1:
            raise ConfigError("rag page sizes must be >= 1")
        if self.merge_min_tokens < 0:
            raise ConfigError(
                f"rag.merge_min_tokens must be >= 0, got {self.merge_min_tokens}"
            )


@dataclass
class WorkerConfig:
    """Background embedding worker settings (chatmemory.yaml: worker:).

    Attributes:
        batch_size: Contexts attempted per cycle.
        interval_seconds: Scheduling period. Changing it requires a restart.
        messages_threshold: Minimum recent messages for a context to qualify.
        enabled: Master switch; toggling it starts or stops a live worker.
        recency_hours: Only messages newer than this window count as activity.
    """

    batch_size: int = 5
    interval_seconds: float = 300.0
    messages_threshold: int = 10
    enabled: bool = True
    recency_hours: float = 24.0

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ConfigError(f"worker.batch_size must be >= 1, got {self.batch_size}")
        if self.interval_seconds <= 0:
            raise ConfigError(
                f"worker.interval_seconds must be > 0, got {self.interval_seconds}"
            )
        if self.messages_threshold < 1:
            raise ConfigError(
                f"worker.messages_threshold must be >= 1, got {self.messages_threshold}"
            )
        if self.recency_hours <= 0:
            raise ConfigError(f"worker.recency_hours must be > 0, got {self.recency_hours}")


@dataclass
class StorageCfg:
    """Database location and vector shape (chatmemory.yaml: storage:).

    Attributes:
        db_path: SQLite database file (relative paths resolve from the CWD).
        dimensions: Expected embedding length; 0 disables the check.
    """

    db_path: str = ".chatmemory.db"
    dimensions: int = 1536


@dataclass
class LoggingCfg:
    """Log level for the CLI handler (chatmemory.yaml: logging:)."""

    level: str = "INFO"


@dataclass
class ChatMemoryConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    rag: RagConfig = field(default_factory=RagConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    storage: StorageCfg = field(default_factory=StorageCfg)
    logging: LoggingCfg = field(default_factory=LoggingCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}' — ignored.",
                UserWarning,
                stacklevel=4,
            )


def _parse_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _cfg_from_dict(data: dict[str, Any]) -> ChatMemoryConfig:
    """Build a *ChatMemoryConfig* from a merged raw YAML dict."""
    cfg = ChatMemoryConfig()

    try:
        if "rag" in data:
            r = data["rag"] or {}
            d = cfg.rag
            cfg.rag = RagConfig(
                chunk_size=int(r.get("chunk_size", d.chunk_size)),
                chunk_overlap=int(r.get("chunk_overlap", d.chunk_overlap)),
                top_k=int(r.get("top_k", d.top_k)),
                min_similarity=float(r.get("min_similarity", d.min_similarity)),
                embedding_model=str(r.get("embedding_model", d.embedding_model)),
                min_chunk_size=int(r.get("min_chunk_size", d.min_chunk_size)),
                history_page_size=int(r.get("history_page_size", d.history_page_size)),
                rebuild_page_size=int(r.get("rebuild_page_size", d.rebuild_page_size)),
                merge_min_tokens=int(r.get("merge_min_tokens", d.merge_min_tokens)),
            )

        if "worker" in data:
            w = data["worker"] or {}
            d = cfg.worker
            cfg.worker = WorkerConfig(
                batch_size=int(w.get("batch_size", d.batch_size)),
                interval_seconds=float(w.get("interval_seconds", d.interval_seconds)),
                messages_threshold=int(w.get("messages_threshold", d.messages_threshold)),
                enabled=_parse_bool(w.get("enabled", d.enabled), "worker.enabled"),
                recency_hours=float(w.get("recency_hours", d.recency_hours)),
            )

        if "storage" in data:
            s = data["storage"] or {}
            cfg.storage = StorageCfg(
                db_path=str(s.get("db_path", cfg.storage.db_path)),
                dimensions=int(s.get("dimensions", cfg.storage.dimensions)),
            )
    except (TypeError, ValueError) as exc:
        if isinstance(exc, ConfigError):
            raise
        raise ConfigError(f"Invalid config value: {exc}") from exc

    if "logging" in data:
        lg = data["logging"] or {}
        cfg.logging = LoggingCfg(level=str(lg.get("level", cfg.logging.level)).upper())

    if cfg.logging.level not in _LOG_LEVELS:
        raise ConfigError(f"logging.level must be one of {sorted(_LOG_LEVELS)}")

    return cfg


def _apply_env_overrides(cfg: ChatMemoryConfig) -> ChatMemoryConfig:
    """Apply CHATMEMORY_* environment variable overrides (layer 2)."""
    raw = asdict(cfg)
    if model := os.environ.get("CHATMEMORY_EMBEDDING_MODEL"):
        raw["rag"]["embedding_model"] = model
    if enabled := os.environ.get("CHATMEMORY_WORKER_ENABLED"):
        raw["worker"]["enabled"] = _parse_bool(enabled, "CHATMEMORY_WORKER_ENABLED")
    if batch := os.environ.get("CHATMEMORY_WORKER_BATCH_SIZE"):
        raw["worker"]["batch_size"] = batch
    if interval := os.environ.get("CHATMEMORY_WORKER_INTERVAL_SECONDS"):
        raw["worker"]["interval_seconds"] = interval
    if threshold := os.environ.get("CHATMEMORY_MESSAGES_THRESHOLD"):
        raw["worker"]["messages_threshold"] = threshold
    if level := os.environ.get("CHATMEMORY_LOG_LEVEL"):
        raw["logging"]["level"] = level
    return _cfg_from_dict(raw)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> ChatMemoryConfig:
    """Load and return a merged *ChatMemoryConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *chatmemory.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Returns:
        Fully merged *ChatMemoryConfig* with env var overrides applied.

    Raises:
        ConfigError: If global config contains API-key-like fields, or if any
            value fails validation (e.g. ``chunk_overlap >= chunk_size``).
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    # Layer 1: global config
    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    # Layer 2: per-project config
    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)

    # Layer 3: env var overrides
    return _apply_env_overrides(cfg)


def write_project_config(project_dir: Path, cfg: ChatMemoryConfig | None = None) -> Path:
    """Write *cfg* (defaults if None) to ``project_dir/chatmemory.yaml``.

    Existing files are left untouched.

    Returns:
        Path to the project config file.
    """
    target = project_dir / _PROJECT_CONFIG_NAME
    if target.exists():
        return target

    data = asdict(cfg or ChatMemoryConfig())
    header = (
        "# chatmemory project configuration.\n"
        "# NEVER store API keys here — use environment variables:\n"
        "#   export OPENAI_API_KEY=sk-...\n\n"
    )
    target.write_text(header + yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    return target
