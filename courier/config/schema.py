"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Transport hard limit per message (characters).
MESSAGE_LIMIT = 4096

# Minimum interval between edits of a streamed message (seconds).
EDIT_INTERVAL = 1.0

# Reaction lifecycle state names, in lifecycle order.
REACTION_STATE_NAMES = ("queued", "active", "done", "error", "timeout")


class RetryConfig(BaseModel):
    """Backoff policy for one-shot sends. Delays are milliseconds."""
    max_retries: int = Field(default=3, ge=0)
    base_delay: int = Field(default=1000, gt=0)
    max_delay: int = Field(default=30000, gt=0)
    jitter: float = Field(default=0.2, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_delay_cap(self) -> "RetryConfig":
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        return self


class StreamingConfig(BaseModel):
    """Edit-in-place streaming of backend output."""
    enabled: bool = True
    limit: int = Field(default=MESSAGE_LIMIT, gt=1)  # Transport hard cap per message
    edit_interval: float = Field(default=EDIT_INTERVAL, gt=0)  # Seconds between flushes


class ReactionsConfig(BaseModel):
    """Per-message progress reactions."""
    enabled: bool = True
    emojis: dict[str, str] = Field(default_factory=dict)  # Overrides, e.g. {"done": "👍"}

    @field_validator("emojis")
    @classmethod
    def _known_states(cls, value: dict[str, str]) -> dict[str, str]:
        unknown = sorted(set(value) - set(REACTION_STATE_NAMES))
        if unknown:
            raise ValueError(f"Unknown reaction state(s): {', '.join(unknown)}")
        return value


class BridgeConfig(BaseModel):
    """Conversation bridge behavior."""
    response_timeout: float | None = None  # Seconds; None disables the timeout reaction
    typing_indicator: bool = True
    chunk_size: int = Field(default=4000, gt=0)  # Max chars per non-streamed chunk
    failure_notice: str = "Sorry, something went wrong while sending my reply. Please try again."


class Config(BaseSettings):
    """Root configuration for courier."""
    model_config = SettingsConfigDict(env_prefix="COURIER_", env_nested_delimiter="__")

    retry: RetryConfig = Field(default_factory=RetryConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    reactions: ReactionsConfig = Field(default_factory=ReactionsConfig)
    bridge: BridgeConfig = Field(default_factory=BridgeConfig)
    data_dir: str = "~/.courier"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment overrides values read from config.json (passed as init kwargs).
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    @property
    def data_path(self) -> Path:
        """Get expanded data directory path."""
        return Path(self.data_dir).expanduser()
