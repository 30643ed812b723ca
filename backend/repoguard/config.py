"""RepoGuard configuration.

Loads settings from two YAML files:
  * repoguard.settings.yaml  — non-secret configuration
  * repoguard.secrets.yaml   — tokens and cloud keys (never committed)

Both files are optional; missing files fall back to the defaults below.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("repoguard.settings.yaml")
SECRETS_FILE  = Path("repoguard.secrets.yaml")

DEFAULT_GIT_USERNAME = "oauth2"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class AwsSecrets(BaseModel):
    access_key_id:     Optional[str] = None
    secret_access_key: Optional[str] = None
    session_token:     Optional[str] = None
    region:            Optional[str] = "us-east-1"


class GitLabSecrets(BaseModel):
    token:    Optional[str] = None
    username: str           = DEFAULT_GIT_USERNAME


class Secrets(BaseModel):
    aws:    AwsSecrets    = Field(default_factory=AwsSecrets)
    gitlab: GitLabSecrets = Field(default_factory=GitLabSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class LoggingSettings(BaseModel):
    level:         str  = "info"
    audit_enabled: bool = True
    audit_path:    str  = "repoguard_jobs.duckdb"


class ChunkingSettings(BaseModel):
    """Parameters of the token-window splitter.

    ``overflow_policy`` decides what happens to text beyond ``max_segments``:
    ``drop`` discards it, ``merge`` appends it to the final segment (which
    may then exceed ``max_tokens``).
    """
    max_tokens:        int                        = 512
    overlap_tokens:    int                        = 300
    min_segment_chars: int                        = 10
    max_segments:      int                        = 50
    overflow_policy:   Literal["drop", "merge"]   = "drop"
    split_mid_word:    bool                       = False

    @field_validator("max_tokens", "max_segments")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @field_validator("split_mid_word")
    @classmethod
    def _word_boundaries_only(cls, v: bool) -> bool:
        if v:
            raise ValueError("mid-word splitting is not supported")
        return v

    @model_validator(mode="after")
    def _check_overlap(self) -> "ChunkingSettings":
        if not 0 <= self.overlap_tokens < self.max_tokens:
            raise ValueError(
                f"overlap_tokens ({self.overlap_tokens}) must be in [0, max_tokens={self.max_tokens})"
            )
        return self


class ContextSettings(BaseModel):
    """Retrieval settings for review-context assembly."""
    chunking: ChunkingSettings = Field(
        default_factory=lambda: ChunkingSettings(overlap_tokens=100)
    )
    top_k:    int              = 5


class EmbeddingSettings(BaseModel):
    provider:              Literal["ollama", "bedrock"] = "ollama"
    model:                 str                          = "nomic-embed-text"
    dim:                   int                          = 768
    base_url:              str                          = "http://localhost:11434"
    request_timeout:       float                        = 60.0
    max_attempts:          int                          = 3
    backoff_base_seconds:  float                        = 5.0
    warmup:                bool                         = True
    warmup_text:           str                          = "model warmup test"

    @field_validator("max_attempts", "dim")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v


class IngestionSettings(BaseModel):
    include_extensions:       List[str]                  = Field(default_factory=lambda: [".java"])
    exclude_dirs:             List[str]                  = Field(
        default_factory=lambda: [".git", "node_modules", "target", "build", ".idea"]
    )
    max_file_bytes:           int                        = 10_000
    embedding_failure_policy: Literal["abort", "skip"]   = "abort"
    temp_root:                Optional[str]              = None


class DeltaSettings(BaseModel):
    fetch_mode:        Literal["api", "clone"] = "api"
    binary_extensions: List[str]               = Field(
        default_factory=lambda: [".png", ".jpg", ".jpeg", ".gif", ".ico", ".jar", ".class", ".zip", ".pdf"]
    )


class ReadinessSettings(BaseModel):
    poll_interval_seconds: float = 5.0
    max_attempts:          int   = 120
    progress_log_every:    int   = 6

    @field_validator("poll_interval_seconds")
    @classmethod
    def _positive_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        return v

    @field_validator("max_attempts", "progress_log_every")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v


class JobSettings(BaseModel):
    max_concurrent_jobs: int = 4
    max_finished_jobs:   int = 100


class IndexSettings(BaseModel):
    data_dir: Optional[str] = "./repoguard_index"


class GitLabSettings(BaseModel):
    url:             str   = "https://gitlab.com"
    default_branch:  str   = "main"
    request_timeout: float = 30.0


class AppConfig(BaseModel):
    logging:   LoggingSettings   = Field(default_factory=LoggingSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    chunking:  ChunkingSettings  = Field(default_factory=ChunkingSettings)
    context:   ContextSettings   = Field(default_factory=ContextSettings)
    ingestion: IngestionSettings = Field(default_factory=IngestionSettings)
    delta:     DeltaSettings     = Field(default_factory=DeltaSettings)
    readiness: ReadinessSettings = Field(default_factory=ReadinessSettings)
    jobs:      JobSettings       = Field(default_factory=JobSettings)
    index:     IndexSettings     = Field(default_factory=IndexSettings)
    gitlab:    GitLabSettings    = Field(default_factory=GitLabSettings)
    secrets:   Secrets           = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------

_config: Optional[AppConfig] = None


def _resolve_relative(value: Optional[str], base_dir: Path) -> Optional[str]:
    if not value:
        return value
    path = Path(value)
    if path.is_absolute():
        return value
    return str((base_dir / path).resolve())


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object.

    Relative ``index.data_dir`` and ``logging.audit_path`` values resolve
    against the directory holding the settings file.
    """
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    if secrets_path is None:
        secrets_path = settings_path.parent / SECRETS_FILE.name
    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(Path(secrets_path))

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)

    base_dir = settings_path.parent.resolve()
    config.index.data_dir     = _resolve_relative(config.index.data_dir, base_dir)
    config.logging.audit_path = _resolve_relative(config.logging.audit_path, base_dir)

    logger.info(
        "Config loaded (embedding=%s/%s dim=%d, fetch_mode=%s, failure_policy=%s)",
        config.embedding.provider,
        config.embedding.model,
        config.embedding.dim,
        config.delta.fetch_mode,
        config.ingestion.embedding_failure_policy,
    )
    return config


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Set (or clear) the process-wide config instance."""
    global _config
    _config = config
