# config.py
# Process configuration. Read once from the environment (and .env) at
# startup; every component receives what it needs through its constructor.

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError


class ConfigError(Exception):
    """Raised when the environment cannot produce a usable configuration."""


class AgentConfig(BaseModel):
    api_key: str
    agent_name: str = "moral-agent-alpha"

    initial_budget: float = Field(default=50.0, ge=0)
    awakening_interval_minutes: int = Field(default=30, ge=1, le=59)
    max_tokens_per_cycle: int = Field(default=16384, gt=0)
    context_token_limit: int = Field(default=100_000, gt=0)

    reasoning_model: str = "anthropic/claude-opus-4.1"
    reasoning_model_class: str = "opus"
    delegation_model: str = "anthropic/claude-3.5-haiku"
    delegation_model_class: str = "haiku"

    swarm_max_budget: float = Field(default=0.50, ge=0)
    swarm_max_turns: int = Field(default=15, gt=0)
    swarm_max_concurrent: int = Field(default=3, gt=0)

    command_timeout_ms: int = Field(default=30_000, gt=0)
    fetch_timeout_s: float = Field(default=10.0, gt=0)
    fetch_max_bytes: int = Field(default=100 * 1024, gt=0)
    max_file_bytes: int = Field(default=1024 * 1024, gt=0)
    journal_warn_bytes: int = Field(default=500 * 1024, gt=0)
    decision_retention: int = Field(default=200, gt=0)
    decision_compact_every: int = Field(default=20, gt=0)

    log_level: str = "INFO"
    testing: bool = False
    base_dir: Path = Path("/")

    @property
    def confined(self) -> bool:
        resolved = self.base_dir.resolve()
        return resolved != Path(resolved.anchor)

    @property
    def default_schedule(self) -> str:
        return f"*/{self.awakening_interval_minutes} * * * *"


# env var → field
_ENV_FIELDS: dict[str, str] = {
    "AGENT_NAME": "agent_name",
    "INITIAL_BUDGET": "initial_budget",
    "AWAKENING_INTERVAL_MINUTES": "awakening_interval_minutes",
    "MAX_TOKENS_PER_CYCLE": "max_tokens_per_cycle",
    "CONTEXT_TOKEN_LIMIT": "context_token_limit",
    "REASONING_MODEL": "reasoning_model",
    "REASONING_MODEL_CLASS": "reasoning_model_class",
    "DELEGATION_MODEL": "delegation_model",
    "DELEGATION_MODEL_CLASS": "delegation_model_class",
    "SWARM_MAX_BUDGET": "swarm_max_budget",
    "SWARM_MAX_TURNS": "swarm_max_turns",
    "SWARM_MAX_CONCURRENT": "swarm_max_concurrent",
    "COMMAND_TIMEOUT_MS": "command_timeout_ms",
    "FETCH_TIMEOUT_S": "fetch_timeout_s",
    "FETCH_MAX_BYTES": "fetch_max_bytes",
    "MAX_FILE_BYTES": "max_file_bytes",
    "JOURNAL_WARN_BYTES": "journal_warn_bytes",
    "DECISION_RETENTION": "decision_retention",
    "DECISION_COMPACT_EVERY": "decision_compact_every",
    "LOG_LEVEL": "log_level",
}


def load_config(env: dict[str, str] | None = None) -> AgentConfig:
    """
    Build the configuration from `env` (default: os.environ after load_dotenv).

    Raises ConfigError when the API key is missing or a value fails validation.
    """
    if env is None:
        load_dotenv()
        env = dict(os.environ)

    api_key = env.get("OPENROUTER_API_KEY", "").strip()
    if not api_key:
        raise ConfigError("OPENROUTER_API_KEY is required. Copy .env.example to .env and fill in your key.")

    testing = env.get("TESTING", "").strip().lower() in ("1", "true", "yes")
    default_base = Path.cwd() / "data" if testing else Path("/")

    values: dict = {"api_key": api_key, "testing": testing}
    values["base_dir"] = Path(env["BASE_DIR"]) if env.get("BASE_DIR") else default_base
    for var, field in _ENV_FIELDS.items():
        raw = env.get(var)
        if raw is not None and raw.strip():
            values[field] = raw.strip()

    try:
        return AgentConfig.model_validate(values)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
