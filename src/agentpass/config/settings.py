"""
config/settings.py — agentpass Runtime Settings

Merges config.yaml (defaults/structure) with .env (secrets).
Pydantic-powered — all fields are validated and typed.

  - HistoryConfig bounds the compaction threshold to (0, 1]
  - FailsafeConfig rejects growth factors that would fire on every pass
  - VirtualAgentConfig keeps the default pass budget inside the hard cap
  - validate_all() performs full startup validation and raises ConfigError
    with a clear, human-readable message listing every problem found
  - load_settings() respects AGENTPASS_CONFIG env var as a fallback
    when no explicit config_path argument is given
"""

from __future__ import annotations

import os
import threading as _threading
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

DEFAULT_PLAN_REMINDER = (
    "The plan still has open steps. Continue working on them, or mark them "
    "completed/abandoned with an explanation."
)


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class AgentConfig(BaseModel):
    max_session_passes: int = 50
    plan_reminder_message: str = DEFAULT_PLAN_REMINDER
    auto_approve: bool = False
    system_prompt: Optional[str] = None     # None = built-in prompt

    @field_validator("max_session_passes")
    @classmethod
    def _positive_passes(cls, v: int) -> int:
        if v < 1:
            raise ValueError("agent.max_session_passes must be >= 1")
        return v


class LLMRetryConfig(BaseModel):
    """Exponential backoff config for transient LLM errors."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0


class LLMConfig(BaseModel):
    model: str = "gpt-4.1"
    temperature: float = 0.2
    max_tokens: int = 4096
    request_timeout_seconds: Optional[float] = 600.0
    max_retries: int = 2
    retry: LLMRetryConfig = Field(default_factory=LLMRetryConfig)
    context_window: Optional[int] = None    # overrides the per-model table
    base_url: Optional[str] = None

    @field_validator("temperature")
    @classmethod
    def _valid_temperature(cls, v: float) -> float:
        if not (0.0 <= v <= 2.0):
            raise ValueError("llm.temperature must be between 0.0 and 2.0")
        return v

    @field_validator("max_tokens")
    @classmethod
    def _positive_tokens(cls, v: int) -> int:
        if v < 1:
            raise ValueError("llm.max_tokens must be >= 1")
        return v

    @field_validator("request_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("llm.request_timeout_seconds must be > 0 (or null to disable)")
        return v

    @field_validator("context_window")
    @classmethod
    def _positive_window(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("llm.context_window must be >= 1 when set")
        return v


class HistoryConfig(BaseModel):
    compaction_enabled: bool = True
    compaction_threshold: float = 0.5
    amnesia_enabled: bool = True
    amnesia_threshold: int = 10
    dementia_limit: int = 0                 # 0 = never drop entries
    preserve_system_messages: bool = True

    @field_validator("compaction_threshold")
    @classmethod
    def _valid_threshold(cls, v: float) -> float:
        if not (0.0 < v <= 1.0):
            raise ValueError("history.compaction_threshold must be in (0.0, 1.0]")
        return v

    @field_validator("amnesia_threshold", "dementia_limit")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("history pass windows must be >= 0")
        return v


class FailsafeConfig(BaseModel):
    enabled: bool = True
    growth_factor: float = 2.0
    min_growth_bytes: int = 1024
    history_dir: Optional[str] = None       # None = <cwd>/.openagent/failsafe-history

    @field_validator("growth_factor")
    @classmethod
    def _valid_factor(cls, v: float) -> float:
        if v <= 1.0:
            raise ValueError(
                "failsafe.growth_factor must be > 1.0 — a factor of 1.0 or less "
                "would terminate the process on ordinary history growth"
            )
        return v


class AllowlistEntry(BaseModel):
    name: str
    subcommands: list[str] = Field(default_factory=list)


class ApprovalConfig(BaseModel):
    allowlist: list[AllowlistEntry] = Field(default_factory=list)

    @field_validator("allowlist", mode="before")
    @classmethod
    def _coerce_names(cls, v: Any) -> Any:
        # Accept bare command names: ["ls", "cat"]
        if isinstance(v, list):
            return [{"name": item} if isinstance(item, str) else item for item in v]
        return v


class VirtualAgentConfig(BaseModel):
    default_max_passes: int = 3
    max_passes_cap: int = 10
    max_depth: int = 1

    @field_validator("default_max_passes", "max_passes_cap")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("virtual_agent pass budgets must be >= 1")
        return v

    @field_validator("max_depth")
    @classmethod
    def _non_negative_depth(cls, v: int) -> int:
        if v < 0:
            raise ValueError("virtual_agent.max_depth must be >= 0")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 100
    backup_count: int = 5
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

_KNOWN_SECTIONS = {
    "agent", "llm", "history", "failsafe",
    "approval", "virtual_agent", "logging",
}


class Settings(BaseSettings):
    """
    agentpass runtime settings.

    Priority (highest to lowest):
      1. Environment variables
      2. .env file
      3. config.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    # -- Secrets from .env ---------------------------------------------------
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")

    # -- Structured config (from config.yaml) --------------------------------
    agent: AgentConfig = Field(default_factory=AgentConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    failsafe: FailsafeConfig = Field(default_factory=FailsafeConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    virtual_agent: VirtualAgentConfig = Field(default_factory=VirtualAgentConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("agent", mode="before")
    @classmethod
    def _coerce_agent(cls, v: Any) -> Any:
        return AgentConfig(**v) if isinstance(v, dict) else v

    @field_validator("llm", mode="before")
    @classmethod
    def _coerce_llm(cls, v: Any) -> Any:
        return LLMConfig(**v) if isinstance(v, dict) else v

    @field_validator("history", mode="before")
    @classmethod
    def _coerce_history(cls, v: Any) -> Any:
        return HistoryConfig(**v) if isinstance(v, dict) else v

    @field_validator("failsafe", mode="before")
    @classmethod
    def _coerce_failsafe(cls, v: Any) -> Any:
        return FailsafeConfig(**v) if isinstance(v, dict) else v

    @field_validator("approval", mode="before")
    @classmethod
    def _coerce_approval(cls, v: Any) -> Any:
        return ApprovalConfig(**v) if isinstance(v, dict) else v

    @field_validator("virtual_agent", mode="before")
    @classmethod
    def _coerce_virtual_agent(cls, v: Any) -> Any:
        return VirtualAgentConfig(**v) if isinstance(v, dict) else v

    @field_validator("logging", mode="before")
    @classmethod
    def _coerce_logging(cls, v: Any) -> Any:
        return LoggingConfig(**v) if isinstance(v, dict) else v

    # -- Convenience properties ----------------------------------------------

    @property
    def model(self) -> str:
        return self.llm.model

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    @property
    def failsafe_history_dir(self) -> Path:
        if self.failsafe.history_dir:
            return Path(self.failsafe.history_dir)
        return Path.cwd() / ".openagent" / "failsafe-history"

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic field validators catch type/value errors at parse time; this
        method catches cross-field and runtime problems Pydantic can't see
        (API key presence, budgets that contradict each other).
        """
        errors: list[str] = []

        # ── LLM API key ──────────────────────────────────────────────────────
        if not self.openai_api_key and not self.llm.base_url:
            errors.append(
                "OPENAI_API_KEY must be set in your .env file "
                "(or llm.base_url must point at a keyless compatible endpoint)."
            )

        # ── Virtual agent budgets ────────────────────────────────────────────
        va = self.virtual_agent
        if va.default_max_passes > va.max_passes_cap:
            errors.append(
                f"virtual_agent.default_max_passes ({va.default_max_passes}) "
                f"exceeds virtual_agent.max_passes_cap ({va.max_passes_cap})."
            )

        # ── Amnesia vs dementia windows ──────────────────────────────────────
        h = self.history
        if h.dementia_limit and h.amnesia_enabled and h.dementia_limit < h.amnesia_threshold:
            errors.append(
                f"history.dementia_limit ({h.dementia_limit}) is smaller than "
                f"history.amnesia_threshold ({h.amnesia_threshold}); entries would "
                f"be dropped before they are ever pruned."
            )

        # ── Model name ───────────────────────────────────────────────────────
        if not self.llm.model.strip():
            errors.append("llm.model must not be empty.")

        # ── Report all errors together ───────────────────────────────────────
        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nagentpass startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your .env file "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. AGENTPASS_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("AGENTPASS_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    global _singleton
    resolved_path = _resolve_config_path(config_path)
    yaml_data = _load_yaml(resolved_path)

    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading from the default config
    path on first use. Guarded by _singleton_lock against double init.
    """
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            _singleton = Settings(**{
                k: v for k, v in _load_yaml(_resolve_config_path(None)).items()
                if k in _KNOWN_SECTIONS
            })
        return _singleton
