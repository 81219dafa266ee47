"""
Runtime configuration — environment-sourced autopilot tunables.

All AUTOPILOT_* variables are read here and validated once. Workspace-level
switches (enabled, billing suspension, opt-in requirement) live on the
Workspace record instead.
"""

from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RuntimeConfig(BaseSettings):
    """Operational autopilot configuration (window, limits, thresholds)."""

    model_config = SettingsConfigDict(
        env_prefix="AUTOPILOT_",
        extra="ignore",
        populate_by_name=True,
    )

    # Operating hours [window_start, window_end), may wrap past midnight
    window_start: int = Field(default=8, ge=0, le=23)
    window_end: int = Field(default=22, ge=0, le=23)

    silence_hours: int = Field(default=24, ge=1, description="Proactive silence threshold")
    cycle_limit: int = Field(default=200, ge=1, description="Max conversations per phase")
    contact_daily_limit: int = Field(default=5, ge=1)
    workspace_daily_limit: int = Field(default=1000, ge=1)
    queue_waiting_threshold: int = Field(default=200, ge=1, description="Backpressure alarm")

    # In-process queue worker; 0 disables the background poller
    worker_poll_seconds: float = Field(default=1.0, ge=0)
    worker_batch_size: int = Field(default=100, ge=1)

    enforce_opt_in: bool = Field(
        default=False,
        validation_alias=AliasChoices("AUTOPILOT_ENFORCE_OPTIN", "ENFORCE_OPTIN", "enforce_opt_in"),
    )
    enforce_24h: bool = True

    ledger_db_path: str = ":memory:"
    openai_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("OPENAI_API_KEY", "openai_api_key"),
    )
    openai_model: str = "gpt-4o-mini"

    def tunables(self) -> dict:
        """The exposed tunables, keyed the way API consumers expect them."""
        return {
            "windowStart": self.window_start,
            "windowEnd": self.window_end,
            "silenceHours": self.silence_hours,
            "cycleLimit": self.cycle_limit,
            "contactDailyLimit": self.contact_daily_limit,
            "workspaceDailyLimit": self.workspace_daily_limit,
            "queueWaitingThreshold": self.queue_waiting_threshold,
            "enforceOptIn": self.enforce_opt_in,
            "enforce24h": self.enforce_24h,
        }


@lru_cache()
def get_runtime_config() -> RuntimeConfig:
    """Process-wide config, read from the environment on first use."""
    return RuntimeConfig()
