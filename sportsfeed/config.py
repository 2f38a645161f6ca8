from __future__ import annotations
import os
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field


class Sport(str, Enum):
    """API namespaces. Each sport lives on its own host."""

    FOOTBALL = "football"
    BASKETBALL = "basketball"
    FORMULA_1 = "formula-1"
    NFL = "nfl"
    NBA = "nba"
    MLB = "mlb"
    NHL = "nhl"
    RUGBY = "rugby"
    HANDBALL = "handball"
    VOLLEYBALL = "volleyball"

    @property
    def base_url(self) -> str:
        return f"https://{_SPORT_HOSTS[self]}"


_SPORT_HOSTS: Dict[Sport, str] = {
    Sport.FOOTBALL: "v3.football.api-sports.io",
    Sport.BASKETBALL: "v1.basketball.api-sports.io",
    Sport.FORMULA_1: "v1.formula-1.api-sports.io",
    Sport.NFL: "v1.american-football.api-sports.io",
    Sport.NBA: "v2.nba.api-sports.io",
    Sport.MLB: "v1.baseball.api-sports.io",
    Sport.NHL: "v1.hockey.api-sports.io",
    Sport.RUGBY: "v1.rugby.api-sports.io",
    Sport.HANDBALL: "v1.handball.api-sports.io",
    Sport.VOLLEYBALL: "v1.volleyball.api-sports.io",
}

# Header carrying the API key on every outbound request.
API_KEY_HEADER = "x-apisports-key"


class EngineConfig(BaseModel):
    """Settings for one engine instance (one namespace, one credential)."""

    sport: Sport = Sport.FOOTBALL
    base_url: Optional[str] = None      # overrides sport.base_url (mock servers, proxies)
    credential_ref: str = "env://APISPORTS_KEY"
    # 'env://VAR_NAME' or a literal key for dev/mock mode

    timeout_s: float = Field(default=30.0, gt=0)

    requests_per_minute: int = Field(default=100, ge=1)
    requests_per_day: int = Field(default=10_000, ge=1)

    # Retry budget for transport failures (connection reset, timeout).
    max_attempts: int = Field(default=3, ge=1)
    base_delay_s: float = Field(default=1.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)

    # Fallback wait surfaced on HTTP 429 (the server is the authority).
    remote_retry_after_s: int = Field(default=60, ge=1)

    cache_max_entries: int = Field(default=1000, ge=1)

    descriptor_path: str = "configs/descriptors/football.yaml"

    @property
    def namespace(self) -> str:
        return self.sport.value

    @property
    def resolved_base_url(self) -> str:
        return (self.base_url or self.sport.base_url).rstrip("/")

    def credential(self) -> str:
        """Resolve credential_ref to the actual key."""
        if self.credential_ref.startswith("env://"):
            return os.environ.get(self.credential_ref[6:], "")
        return self.credential_ref

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build a config from SPORTSFEED_* environment variables; unset ones keep defaults."""
        env = os.environ
        values: Dict[str, str] = {}
        mapping = {
            "sport": "SPORTSFEED_SPORT",
            "base_url": "SPORTSFEED_BASE_URL",
            "credential_ref": "SPORTSFEED_CREDENTIAL_REF",
            "timeout_s": "SPORTSFEED_TIMEOUT_S",
            "requests_per_minute": "SPORTSFEED_REQUESTS_PER_MINUTE",
            "requests_per_day": "SPORTSFEED_REQUESTS_PER_DAY",
            "max_attempts": "SPORTSFEED_MAX_ATTEMPTS",
            "base_delay_s": "SPORTSFEED_BASE_DELAY_S",
            "backoff_multiplier": "SPORTSFEED_BACKOFF_MULTIPLIER",
            "remote_retry_after_s": "SPORTSFEED_REMOTE_RETRY_AFTER_S",
            "cache_max_entries": "SPORTSFEED_CACHE_MAX_ENTRIES",
            "descriptor_path": "SPORTSFEED_DESCRIPTORS",
        }
        for field_name, var in mapping.items():
            if env.get(var):
                values[field_name] = env[var]
        return cls.model_validate(values)
