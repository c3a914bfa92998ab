import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import AliasChoices, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings

from app.rate_limit import TrustConfig

logger = logging.getLogger(__name__)

# Look for .env in the project root (parent of backend/)
ENV_FILE = Path(__file__).resolve().parent.parent.parent / ".env"

_LOG_LEVELS = {
    "debug": "DEBUG",
    "info": "INFO",
    "warn": "WARNING",
    "warning": "WARNING",
    "error": "ERROR",
}

# (minimum, maximum) accepted for each integer setting
_INT_BOUNDS: dict[str, tuple[int, int | None]] = {
    "port": (1, 65535),
    "rate_limit_ms": (0, None),
    "max_response_size": (1, None),
}


def parse_int_or_default(
    raw: Any,
    default: int,
    name: str,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    """Parse an integer setting, falling back to ``default`` on bad input.

    Unset or empty values silently use the default. Anything that is not an
    integer, or falls outside ``minimum``/``maximum``, logs a warning and
    uses the default as well, so a typo in the environment never stops the
    proxy from starting.
    """
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return default
    try:
        value = int(str(raw).strip())
    except ValueError:
        logger.warning("Invalid %s value %r, using default %s", name, raw, default)
        return default
    if (minimum is not None and value < minimum) or (
        maximum is not None and value > maximum
    ):
        logger.warning("Out of range %s value %r, using default %s", name, raw, default)
        return default
    return value


class Settings(BaseSettings):
    # Upstream
    target_url: str = Field(
        default="http://your-app:8080/health",
        validation_alias=AliasChoices("target_url", "target_health_url"),
    )
    upstream_timeout: float = 10.0  # seconds

    # Listener
    host: str = "0.0.0.0"
    port: int = 8080

    # Admission
    rate_limit_ms: int = 1000
    rate_limit_whitelist_ip: str = ""  # empty = rate limit everyone
    trusted_proxy_ip: str = Field(
        default="",  # empty = no proxy headers are honored
        validation_alias=AliasChoices("trusted_proxy_ip", "only_trust_proxy_ip"),
    )

    # Response ceiling, in KiB
    max_response_size: int = 100

    # Logging
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "console"

    @field_validator("port", "rate_limit_ms", "max_response_size", mode="before")
    @classmethod
    def fallback_to_default_int(cls, v: Any, info: ValidationInfo) -> int:
        minimum, maximum = _INT_BOUNDS[info.field_name]
        return parse_int_or_default(
            v,
            cls.model_fields[info.field_name].default,
            info.field_name.upper(),
            minimum=minimum,
            maximum=maximum,
        )

    @field_validator("upstream_timeout", mode="before")
    @classmethod
    def fallback_to_default_timeout(cls, v: Any) -> float:
        default = cls.model_fields["upstream_timeout"].default
        if v is None or (isinstance(v, str) and not v.strip()):
            return default
        try:
            value = float(v)
        except (TypeError, ValueError):
            value = 0.0
        if value <= 0:
            logger.warning(
                "Invalid UPSTREAM_TIMEOUT value %r, using default %s", v, default
            )
            return default
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> str:
        level = _LOG_LEVELS.get(str(v).strip().lower())
        if level is None:
            logger.warning("Invalid LOG_LEVEL value %r, using INFO", v)
            return "INFO"
        return level

    @field_validator("log_format", mode="before")
    @classmethod
    def normalize_log_format(cls, v: Any) -> str:
        fmt = str(v).strip().lower()
        if fmt not in ("json", "console"):
            logger.warning("Invalid LOG_FORMAT value %r, using console", v)
            return "console"
        return fmt

    @field_validator("target_url", "rate_limit_whitelist_ip", "trusted_proxy_ip")
    @classmethod
    def strip_whitespace(cls, v: str) -> str:
        return v.strip()

    @property
    def max_response_bytes(self) -> int:
        return self.max_response_size * 1024

    @property
    def rate_limit_window(self) -> float:
        """Throttle window in seconds."""
        return self.rate_limit_ms / 1000

    @property
    def trust(self) -> TrustConfig:
        return TrustConfig(
            whitelist_ip=self.rate_limit_whitelist_ip,
            trusted_proxy_ip=self.trusted_proxy_ip,
        )

    model_config = {
        "env_file": str(ENV_FILE) if ENV_FILE.exists() else None,
        "extra": "ignore",  # Ignore extra env vars not defined in model
    }


@lru_cache
def get_settings() -> Settings:
    return Settings()

