"""
Registration Sync - Propagation Configuration

Explicit settings handed to the dispatcher and the reconciliation engine.
Environment variables are read once, here, and nowhere else in the pipeline.
"""
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, Optional


DEFAULT_PER_PLAYER_RATE = 800
DEFAULT_DMZ_API_URL = "https://dmz.agneepath.co.in/api/users"
DEFAULT_TIMEZONE = "Asia/Kolkata"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class PropagationConfig:
    """
    Settings for reconciliation and downstream sync.

    Recognized fields:
    - sheet_id: target spreadsheet for the mirror tabs
    - service_credential: service-account info dict for the sheet API
    - per_player_rate: amount charged per extra player
    - sync_enabled: master switch for all sinks
    """
    sheet_id: Optional[str] = None
    service_credential: Optional[Dict[str, Any]] = None
    per_player_rate: int = DEFAULT_PER_PLAYER_RATE
    sync_enabled: bool = True

    dmz_api_url: str = DEFAULT_DMZ_API_URL
    dmz_api_key: str = ""

    # Hardening for sink outages
    sink_timeout_seconds: float = 10.0
    sink_retry_attempts: int = 2
    sink_retry_backoff_seconds: float = 0.5

    timezone: str = DEFAULT_TIMEZONE
    internal_api_key: str = field(default="sync-internal-key-change-in-production", repr=False)

    @property
    def sheets_configured(self) -> bool:
        return bool(self.sheet_id and self.service_credential)

    @property
    def allowlist_configured(self) -> bool:
        return bool(self.dmz_api_url and self.dmz_api_key)

    @classmethod
    def from_env(cls) -> "PropagationConfig":
        """Build configuration from process environment."""
        client_email = os.getenv("GOOGLE_CLIENT_EMAIL")
        private_key = os.getenv("GOOGLE_PRIVATE_KEY")
        credential = None
        if client_email and private_key:
            credential = {
                "type": "service_account",
                "client_email": client_email,
                # Keys pasted into env files carry escaped newlines
                "private_key": private_key.replace("\\n", "\n"),
                "token_uri": "https://oauth2.googleapis.com/token",
            }

        return cls(
            sheet_id=os.getenv("GOOGLE_SHEET_ID"),
            service_credential=credential,
            per_player_rate=int(os.getenv("PER_PLAYER_RATE", DEFAULT_PER_PLAYER_RATE)),
            sync_enabled=_env_bool("SYNC_ENABLED", True),
            dmz_api_url=os.getenv("DMZ_API_URL", DEFAULT_DMZ_API_URL),
            dmz_api_key=os.getenv("DMZ_API_KEY", ""),
            sink_timeout_seconds=float(os.getenv("SINK_TIMEOUT_SECONDS", "10")),
            sink_retry_attempts=int(os.getenv("SINK_RETRY_ATTEMPTS", "2")),
            sink_retry_backoff_seconds=float(os.getenv("SINK_RETRY_BACKOFF_SECONDS", "0.5")),
            timezone=os.getenv("SYNC_TIMEZONE", DEFAULT_TIMEZONE),
            internal_api_key=os.getenv("INTERNAL_API_KEY", "sync-internal-key-change-in-production"),
        )


@lru_cache(maxsize=1)
def get_config() -> PropagationConfig:
    """Process-wide configuration, read from the environment once."""
    return PropagationConfig.from_env()
