"""Runtime settings, read from the environment."""

import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field

from osgen.errors import ConfigurationError

# Tenant hosts live under .outsystems.dev; published apps under -dev.outsystems.app
_TENANT_HOST_SUFFIX = ".outsystems.dev"
_APP_HOST_SUFFIX = "-dev.outsystems.app"


def app_base_url_for(hostname: str) -> str:
    """Derive the public application base address from the tenant hostname."""
    return "https://" + hostname.replace(_TENANT_HOST_SUFFIX, _APP_HOST_SUFFIX, 1)


def _as_float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigurationError(f"Invalid number for {key}: {raw!r}") from e
    if value < 0:
        raise ConfigurationError(f"{key} must not be negative, got {raw!r}")
    return value


class Settings(BaseModel):
    """Everything the orchestrator needs to talk to one tenant."""

    hostname: str
    username: str = ""
    password: str = ""
    app_base_url: Optional[str] = None
    static_token: Optional[str] = None
    credential_provider: Optional[str] = None
    request_timeout: float = Field(30.0, gt=0)
    ready_poll_interval: float = Field(5.0, ge=0)
    build_poll_interval: float = Field(10.0, ge=0)
    publish_poll_interval: float = Field(10.0, ge=0)
    token_refresh_skew: float = Field(60.0, ge=0)
    token_fallback_lifetime: float = Field(60.0, ge=0)

    @property
    def base_url(self) -> str:
        if self.app_base_url:
            return self.app_base_url
        return app_base_url_for(self.hostname)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        hostname = (env.get("OS_HOSTNAME") or "").strip()
        if not hostname:
            raise ConfigurationError("Missing required environment variable: OS_HOSTNAME")

        return cls(
            hostname=hostname,
            username=env.get("OS_USERNAME", ""),
            password=env.get("OS_PASSWORD", ""),
            app_base_url=env.get("OS_APP_BASE_URL") or None,
            static_token=env.get("OSGEN_TOKEN") or None,
            credential_provider=env.get("OSGEN_CREDENTIAL_PROVIDER") or None,
            request_timeout=_as_float(env, "OSGEN_REQUEST_TIMEOUT", 30.0) or 30.0,
            ready_poll_interval=_as_float(env, "OSGEN_READY_POLL_INTERVAL", 5.0),
            build_poll_interval=_as_float(env, "OSGEN_BUILD_POLL_INTERVAL", 10.0),
            publish_poll_interval=_as_float(env, "OSGEN_PUBLISH_POLL_INTERVAL", 10.0),
            token_refresh_skew=_as_float(env, "OSGEN_TOKEN_REFRESH_SKEW", 60.0),
            token_fallback_lifetime=_as_float(env, "OSGEN_TOKEN_FALLBACK_LIFETIME", 60.0),
        )
