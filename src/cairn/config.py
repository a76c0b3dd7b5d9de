"""Cairn configuration loader.

Priority (high → low):
  1. CLI flags           (handled at the call site, not in this module)
  2. Environment variables  (CAIRN_EMBEDDING_MODEL, CAIRN_EMBEDDING_DIMENSIONS, ...)
  3. Per-project cairn.yaml
  4. Global ~/.cairn/config.yaml  (model defaults only, no API keys)
  5. Hardcoded defaults

The resulting CairnConfig is passed explicitly to the task queue, the
pipeline and the retrieval engine. Nothing in the core reads settings from
ambient state.

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load(), never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from cairn.errors import ConfigurationError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".cairn"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "cairn.yaml"

# Matches: api_key, apikey, api-key, api_secret, _token (suffix), standalone token,
# standalone secret, _secret (suffix), password, passwd, credential(s).
# Does NOT match legitimate config keys like max_tokens or rrf_k.
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

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["embedding", "models", "chunking", "queue", "workers", "retrieval", "storage", "prompts"]
)

DEFAULT_IMAGE_PROMPT = """\
Analyze this image and respond based on its primary content:
- If the image is mainly text (document, screenshot, sign), transcribe the text verbatim.
- If the image is mainly visual (photograph, art, landscape), provide a concise description of the scene.
- For hybrid images (diagrams, ads), briefly describe the visual, then transcribe the text under a "Text:" heading.

Respond directly with the analysis."""


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ConfigurationError, ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class EmbeddingCfg:
    """Embedding model configuration (cairn.yaml: embedding:).

    Changing ``dimensions`` invalidates every stored vector until
    ``cairn reembed`` has run.
    """

    model: str = "openai/text-embedding-3-small"
    dimensions: int = 1536


@dataclass
class ModelsCfg:
    """Per-stage model identifiers (cairn.yaml: models:)."""

    extraction: str = "openai/gpt-4o-mini"
    vision: str = "openai/gpt-4o-mini"
    transcription: str = "openai/whisper-1"
    rerank: str = "cohere/rerank-english-v3.0"


@dataclass
class ChunkingCfg:
    """Chunk size (tokens, ~4 chars each) and overlap fraction."""

    chunk_size: int = 512
    overlap: float = 0.10

    @property
    def max_chars(self) -> int:
        return self.chunk_size * 4

    @property
    def overlap_chars(self) -> int:
        return int(self.max_chars * self.overlap)


@dataclass
class QueueCfg:
    """Task queue retry policy (cairn.yaml: queue:).

    Attributes:
        max_attempts: Attempts after which a retryable failure becomes terminal.
        retry_base_delay: Seconds before the first retry.
        retry_max_delay: Upper bound for a single backoff delay, in seconds.
        backoff_cap_exponent: Largest exponent applied to the base delay.
        jitter: Extra random delay, as a fraction of the computed delay.
        lease_seconds: How long a claimed task stays owned by its worker.
    """

    max_attempts: int = 5
    retry_base_delay: float = 30.0
    retry_max_delay: float = 15 * 60.0
    backoff_cap_exponent: int = 5
    jitter: float = 0.2
    lease_seconds: float = 30 * 60.0


@dataclass
class WorkersCfg:
    """Worker pool configuration (cairn.yaml: workers:)."""

    pool_size: int = 4
    poll_interval: float = 1.0
    call_timeout: float = 120.0
    fetch_timeout: float = 30.0


@dataclass
class RetrievalCfg:
    """Retrieval engine configuration (cairn.yaml: retrieval:)."""

    top_k: int = 10
    rrf_k: int = 60
    vector_take: int = 20
    fts_take: int = 20
    min_vector_similarity: float = 0.2
    rerank_enabled: bool = False
    rerank_window: int = 20
    graph_neighbor_limit: int = 5
    related_entity_take: int = 10


@dataclass
class StorageCfg:
    """Where the database and uploaded files live (cairn.yaml: storage:)."""

    database: str = ".cairn.db"
    files_dir: str = ".cairn-files"


@dataclass
class PromptsCfg:
    """Instruction texts sent to models (cairn.yaml: prompts:)."""

    image: str = DEFAULT_IMAGE_PROMPT
    extraction: str | None = None  # None → built-in extraction prompt


@dataclass
class CairnConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    models: ModelsCfg = field(default_factory=ModelsCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    queue: QueueCfg = field(default_factory=QueueCfg)
    workers: WorkersCfg = field(default_factory=WorkersCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    storage: StorageCfg = field(default_factory=StorageCfg)
    prompts: PromptsCfg = field(default_factory=PromptsCfg)


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
                f"Unknown config key '{key}' in '{source}' (ignored).",
                UserWarning,
                stacklevel=4,
            )


def validate_config(cfg: CairnConfig) -> None:
    """Raise ConfigError for values the pipeline cannot run with."""
    if cfg.embedding.dimensions < 1:
        raise ConfigError(f"embedding.dimensions must be >= 1, got {cfg.embedding.dimensions}")
    if cfg.chunking.chunk_size < 1:
        raise ConfigError(f"chunking.chunk_size must be >= 1, got {cfg.chunking.chunk_size}")
    if not 0.0 <= cfg.chunking.overlap < 1.0:
        raise ConfigError(f"chunking.overlap must be in [0.0, 1.0), got {cfg.chunking.overlap}")
    if cfg.queue.max_attempts < 1:
        raise ConfigError(f"queue.max_attempts must be >= 1, got {cfg.queue.max_attempts}")
    if cfg.workers.pool_size < 1:
        raise ConfigError(f"workers.pool_size must be >= 1, got {cfg.workers.pool_size}")
    if cfg.retrieval.rrf_k < 1:
        raise ConfigError(f"retrieval.rrf_k must be >= 1, got {cfg.retrieval.rrf_k}")


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


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _cfg_from_dict(data: dict[str, Any]) -> CairnConfig:
    """Build a *CairnConfig* from a merged raw YAML dict."""
    cfg = CairnConfig()

    if "embedding" in data:
        e = data["embedding"]
        cfg.embedding = EmbeddingCfg(
            model=str(e.get("model", cfg.embedding.model)),
            dimensions=int(e.get("dimensions", cfg.embedding.dimensions)),
        )

    if "models" in data:
        m = data["models"]
        cfg.models = ModelsCfg(
            extraction=str(m.get("extraction", cfg.models.extraction)),
            vision=str(m.get("vision", cfg.models.vision)),
            transcription=str(m.get("transcription", cfg.models.transcription)),
            rerank=str(m.get("rerank", cfg.models.rerank)),
        )

    if "chunking" in data:
        c = data["chunking"]
        cfg.chunking = ChunkingCfg(
            chunk_size=int(c.get("chunk_size", cfg.chunking.chunk_size)),
            overlap=float(c.get("overlap", cfg.chunking.overlap)),
        )

    if "queue" in data:
        q = data["queue"]
        cfg.queue = QueueCfg(
            max_attempts=int(q.get("max_attempts", cfg.queue.max_attempts)),
            retry_base_delay=float(q.get("retry_base_delay", cfg.queue.retry_base_delay)),
            retry_max_delay=float(q.get("retry_max_delay", cfg.queue.retry_max_delay)),
            backoff_cap_exponent=int(
                q.get("backoff_cap_exponent", cfg.queue.backoff_cap_exponent)
            ),
            jitter=float(q.get("jitter", cfg.queue.jitter)),
            lease_seconds=float(q.get("lease_seconds", cfg.queue.lease_seconds)),
        )

    if "workers" in data:
        w = data["workers"]
        cfg.workers = WorkersCfg(
            pool_size=int(w.get("pool_size", cfg.workers.pool_size)),
            poll_interval=float(w.get("poll_interval", cfg.workers.poll_interval)),
            call_timeout=float(w.get("call_timeout", cfg.workers.call_timeout)),
            fetch_timeout=float(w.get("fetch_timeout", cfg.workers.fetch_timeout)),
        )

    if "retrieval" in data:
        r = data["retrieval"]
        cfg.retrieval = RetrievalCfg(
            top_k=int(r.get("top_k", cfg.retrieval.top_k)),
            rrf_k=int(r.get("rrf_k", cfg.retrieval.rrf_k)),
            vector_take=int(r.get("vector_take", cfg.retrieval.vector_take)),
            fts_take=int(r.get("fts_take", cfg.retrieval.fts_take)),
            min_vector_similarity=float(
                r.get("min_vector_similarity", cfg.retrieval.min_vector_similarity)
            ),
            rerank_enabled=_as_bool(r.get("rerank_enabled", cfg.retrieval.rerank_enabled)),
            rerank_window=int(r.get("rerank_window", cfg.retrieval.rerank_window)),
            graph_neighbor_limit=int(
                r.get("graph_neighbor_limit", cfg.retrieval.graph_neighbor_limit)
            ),
            related_entity_take=int(
                r.get("related_entity_take", cfg.retrieval.related_entity_take)
            ),
        )

    if "storage" in data:
        s = data["storage"]
        cfg.storage = StorageCfg(
            database=str(s.get("database", cfg.storage.database)),
            files_dir=str(s.get("files_dir", cfg.storage.files_dir)),
        )

    if "prompts" in data:
        p = data["prompts"]
        cfg.prompts = PromptsCfg(
            image=str(p.get("image", cfg.prompts.image)),
            extraction=p.get("extraction") or cfg.prompts.extraction,
        )

    return cfg


def _apply_env_overrides(cfg: CairnConfig) -> CairnConfig:
    """Apply CAIRN_* environment variable overrides."""
    if model := os.environ.get("CAIRN_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if dims := os.environ.get("CAIRN_EMBEDDING_DIMENSIONS"):
        try:
            cfg.embedding.dimensions = int(dims)
        except ValueError as exc:
            raise ConfigError(
                f"CAIRN_EMBEDDING_DIMENSIONS must be an integer, got '{dims}'"
            ) from exc
    if model := os.environ.get("CAIRN_EXTRACTION_MODEL"):
        cfg.models.extraction = model
    if path := os.environ.get("CAIRN_DATABASE"):
        cfg.storage.database = path
    if rerank := os.environ.get("CAIRN_RERANK_ENABLED"):
        cfg.retrieval.rerank_enabled = _as_bool(rerank)
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> CairnConfig:
    """Load and return a merged *CairnConfig*.

    Applies layers in order: global → per-project → env vars, then validates.

    Args:
        project_dir: Directory to search for *cairn.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Raises:
        ConfigError: If global config contains API-key-like fields or a value
            is out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _apply_env_overrides(_cfg_from_dict(merged))
    validate_config(cfg)
    return cfg


def ensure_global_config(
    global_config_path: Path | None = None,
) -> Path:
    """Create ``~/.cairn/config.yaml`` with defaults if it does not exist.

    Creates parent directory with mode 0o700 and the config file with
    mode 0o600 (owner-readable only).
    """
    target = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    if not target.exists():
        content = (
            "# Cairn global configuration: model defaults only.\n"
            "# NEVER store API keys here. Use environment variables:\n"
            "#   export OPENAI_API_KEY=sk-...\n"
            "\n"
            "embedding:\n"
            "  model: openai/text-embedding-3-small\n"
            "  dimensions: 1536\n"
            "\n"
            "models:\n"
            "  extraction: openai/gpt-4o-mini\n"
        )
        target.write_text(content, encoding="utf-8")
        target.chmod(0o600)

    return target
