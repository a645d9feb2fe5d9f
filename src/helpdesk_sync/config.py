"""
Sync configuration.

Settings live in the settings store under static keys. Connection settings
may be overridden from the environment so secrets need not be stored.
"""

import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

from pydantic import BaseModel, Field, ValidationError, field_validator

from helpdesk_sync.errors import ConfigurationError

# Settings store keys
KEY_BASE_URL = "baseUrl"
KEY_AUTH_TOKEN = "authToken"
KEY_SITE_ID = "siteId"
KEY_PAGE_SIZE = "pageSize"
KEY_BATCH_SIZE = "batchSize"
KEY_THROTTLE_MS = "throttleMs"
KEY_PERIOD_ID = "periodId"
KEY_QUANTUM_SECONDS = "quantumSeconds"

SETTINGS_KEYS = (
    KEY_BASE_URL,
    KEY_AUTH_TOKEN,
    KEY_SITE_ID,
    KEY_PAGE_SIZE,
    KEY_BATCH_SIZE,
    KEY_THROTTLE_MS,
    KEY_PERIOD_ID,
    KEY_QUANTUM_SECONDS,
)

# Environment variables take precedence over stored values
ENV_OVERRIDES = {
    KEY_BASE_URL: "HDSYNC_BASE_URL",
    KEY_AUTH_TOKEN: "HDSYNC_AUTH_TOKEN",
    KEY_SITE_ID: "HDSYNC_SITE_ID",
}

# Hard platform limit is a few minutes; stop with a margin to spare
DEFAULT_QUANTUM_SECONDS = 270.0

_SCHOOL_YEAR = re.compile(r"^(\d{4})-(\d{4})$")
_CALENDAR_YEAR = re.compile(r"^(\d{4})$")
_DATE_RANGE = re.compile(r"^(\d{4}-\d{2}-\d{2})\.\.(\d{4}-\d{2}-\d{2})$")


@dataclass(frozen=True)
class Period:
    """
    The creation-date window a load covers: [start, end).

    Accepted identifiers:
        2024-2025               school year, 2024-07-01 to 2025-07-01
        2024                    calendar year
        2024-01-15..2024-03-01  explicit range, end exclusive
    """
    period_id: str
    start: datetime
    end: datetime

    @classmethod
    def parse(cls, period_id: str) -> "Period":
        value = (period_id or "").strip()

        match = _SCHOOL_YEAR.match(value)
        if match:
            first, second = int(match.group(1)), int(match.group(2))
            if second != first + 1:
                raise ConfigurationError(
                    f"Malformed period '{period_id}': school year must span consecutive years"
                )
            return cls(value, _utc(first, 7, 1), _utc(second, 7, 1))

        match = _CALENDAR_YEAR.match(value)
        if match:
            year = int(match.group(1))
            return cls(value, _utc(year, 1, 1), _utc(year + 1, 1, 1))

        match = _DATE_RANGE.match(value)
        if match:
            try:
                start = datetime.fromisoformat(match.group(1)).replace(tzinfo=timezone.utc)
                end = datetime.fromisoformat(match.group(2)).replace(tzinfo=timezone.utc)
            except ValueError as e:
                raise ConfigurationError(f"Malformed period '{period_id}': {e}") from e
            if end <= start:
                raise ConfigurationError(f"Malformed period '{period_id}': end must be after start")
            return cls(value, start, end)

        raise ConfigurationError(
            f"Malformed period '{period_id}'. "
            "Use YYYY-YYYY, YYYY or YYYY-MM-DD..YYYY-MM-DD."
        )

    def is_historical(self, now: datetime) -> bool:
        """True once the whole period lies in the past."""
        return self.end <= now

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


def _utc(year: int, month: int, day: int) -> datetime:
    return datetime(year, month, day, tzinfo=timezone.utc)


class SyncSettings(BaseModel):
    """Validated settings for one session."""

    base_url: str
    api_token: str
    site_id: str | None = None
    page_size: int = Field(100, ge=1, le=1000)
    batch_size: int = Field(100, ge=1, le=1000)
    throttle_ms: int = Field(1000, ge=0)
    period_id: str
    quantum_seconds: float = Field(DEFAULT_QUANTUM_SECONDS, gt=0)

    @field_validator("base_url")
    @classmethod
    def check_base_url(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("site_id", mode="before")
    @classmethod
    def blank_site_is_none(cls, v: Any) -> str | None:
        if v is None or str(v).strip() == "":
            return None
        return str(v).strip()

    @classmethod
    def from_settings(
        cls,
        values: Mapping[str, Any],
        env: Mapping[str, str] | None = None,
    ) -> "SyncSettings":
        """
        Build settings from a settings-store snapshot.

        Raises:
            ConfigurationError: naming every missing or invalid key
        """
        merged = dict(values)
        environ = os.environ if env is None else env
        for key, env_var in ENV_OVERRIDES.items():
            if environ.get(env_var):
                merged[key] = environ[env_var]

        raw = {
            "base_url": merged.get(KEY_BASE_URL),
            "api_token": merged.get(KEY_AUTH_TOKEN),
            "site_id": merged.get(KEY_SITE_ID),
            "page_size": merged.get(KEY_PAGE_SIZE),
            "batch_size": merged.get(KEY_BATCH_SIZE),
            "throttle_ms": merged.get(KEY_THROTTLE_MS),
            "period_id": merged.get(KEY_PERIOD_ID),
            "quantum_seconds": merged.get(KEY_QUANTUM_SECONDS),
        }
        # Absent optional keys fall back to model defaults
        raw = {k: v for k, v in raw.items() if v is not None and v != ""}

        try:
            settings = cls.model_validate(raw)
        except ValidationError as e:
            problems = "; ".join(
                f"{_FIELD_TO_KEY.get(str(err['loc'][0]), err['loc'][0])}: {err['msg']}"
                for err in e.errors()
            )
            raise ConfigurationError(f"Invalid settings - {problems}") from e

        # Fail fast on a malformed period
        Period.parse(settings.period_id)
        return settings

    @property
    def period(self) -> Period:
        return Period.parse(self.period_id)


_FIELD_TO_KEY = {
    "base_url": KEY_BASE_URL,
    "api_token": KEY_AUTH_TOKEN,
    "site_id": KEY_SITE_ID,
    "page_size": KEY_PAGE_SIZE,
    "batch_size": KEY_BATCH_SIZE,
    "throttle_ms": KEY_THROTTLE_MS,
    "period_id": KEY_PERIOD_ID,
    "quantum_seconds": KEY_QUANTUM_SECONDS,
}
