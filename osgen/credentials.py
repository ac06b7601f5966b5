"""Bearer credential caching with single-flight refresh.

The cache is the only state shared by concurrent workflow runs. Reads of a
fresh credential never suspend; a refresh is started at most once no matter
how many runs ask for a token while it is in flight, and every waiter sees
the same outcome.
"""

import asyncio
import dataclasses
import importlib
import inspect
import logging
import time
from typing import Awaitable, Callable, Optional, Protocol, runtime_checkable

import jwt

from osgen.config import Settings
from osgen.errors import AuthFailure, ConfigurationError

logger = logging.getLogger("osgen")


@dataclasses.dataclass(frozen=True)
class Credential:
    """An issued bearer token and the absolute time (epoch seconds) it expires."""

    token: str = dataclasses.field(repr=False)
    expires_at: float

    def is_fresh(self, now: float, refresh_skew: float) -> bool:
        return now < self.expires_at - refresh_skew


@runtime_checkable
class CredentialProvider(Protocol):
    """Produces a bearer token for a principal, or raises."""

    async def authenticate(self, hostname: str, username: str, password: str) -> str:
        ...


class StaticTokenProvider:
    """Hands out a pre-issued token (``OSGEN_TOKEN``)."""

    def __init__(self, token: str):
        self._token = token

    async def authenticate(self, hostname: str, username: str, password: str) -> str:
        return self._token


class FunctionProvider:
    """Adapts a bare ``async def authenticate(hostname, username, password)``."""

    def __init__(self, func: Callable[[str, str, str], Awaitable[str]]):
        self._func = func

    async def authenticate(self, hostname: str, username: str, password: str) -> str:
        return await self._func(hostname, username, password)


def load_provider(spec: str) -> CredentialProvider:
    """Resolve a ``package.module:attribute`` provider reference.

    The attribute may be a provider object, a coroutine function with the
    ``authenticate`` signature, or a zero-argument factory returning a provider.
    """
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(f"Credential provider must look like 'module:attribute', got {spec!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import credential provider module '{module_name}': {e}") from e
    try:
        target = getattr(module, attr)
    except AttributeError as e:
        raise ConfigurationError(f"Module '{module_name}' has no attribute '{attr}'") from e

    if hasattr(target, "authenticate") and not inspect.isclass(target):
        return target
    if inspect.iscoroutinefunction(target):
        return FunctionProvider(target)
    if callable(target):
        provider = target()
        if hasattr(provider, "authenticate"):
            return provider
    raise ConfigurationError(f"'{spec}' does not resolve to a credential provider")


def build_provider(settings: Settings) -> CredentialProvider:
    if settings.static_token:
        return StaticTokenProvider(settings.static_token)
    if settings.credential_provider:
        return load_provider(settings.credential_provider)
    raise ConfigurationError(
        "No credential provider configured. Set OSGEN_TOKEN or OSGEN_CREDENTIAL_PROVIDER."
    )


def token_expiry(token: str) -> Optional[float]:
    """Read the ``exp`` claim without verifying the signature. None if unusable."""
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    exp = claims.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return None
    return float(exp)


class CredentialCache:
    """Serves a valid bearer credential, refreshing through the provider when needed."""

    def __init__(
        self,
        provider: CredentialProvider,
        hostname: str,
        username: str = "",
        password: str = "",
        refresh_skew: float = 60.0,
        fallback_lifetime: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self._provider = provider
        self._hostname = hostname
        self._username = username
        self._password = password
        self._refresh_skew = refresh_skew
        self._fallback_lifetime = fallback_lifetime
        self._clock = clock
        self._credential: Optional[Credential] = None
        self._refresh: Optional[asyncio.Future] = None

    @classmethod
    def from_settings(cls, settings: Settings, provider: Optional[CredentialProvider] = None, **kwargs) -> "CredentialCache":
        return cls(
            provider or build_provider(settings),
            hostname=settings.hostname,
            username=settings.username,
            password=settings.password,
            refresh_skew=settings.token_refresh_skew,
            fallback_lifetime=settings.token_fallback_lifetime,
            **kwargs,
        )

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    @property
    def refreshing(self) -> bool:
        return self._refresh is not None

    def invalidate(self) -> None:
        """Drop the cached credential; the next ``get_token`` refreshes."""
        self._credential = None

    async def get_token(self) -> Credential:
        cached = self._credential
        if cached is not None and cached.is_fresh(self._clock(), self._refresh_skew):
            return cached

        if self._refresh is None:
            self._refresh = asyncio.ensure_future(self._fetch())
            self._refresh.add_done_callback(_consume_result)
        # A cancelled waiter must not cancel the refresh the others share.
        return await asyncio.shield(self._refresh)

    async def _fetch(self) -> Credential:
        logger.info("Fetching a new OutSystems token for %s", self._hostname)
        try:
            token = await self._provider.authenticate(self._hostname, self._username, self._password)
            if not isinstance(token, str) or not token:
                raise AuthFailure("Credential provider returned no token")
        except AuthFailure:
            logger.error("Authentication against %s failed", self._hostname)
            raise
        except Exception as exc:
            logger.error("Authentication against %s failed: %s", self._hostname, exc)
            raise AuthFailure(f"Failed to retrieve authentication token. Original error: {exc}") from exc
        finally:
            self._refresh = None

        now = self._clock()
        expires_at = token_expiry(token)
        if expires_at is None:
            logger.warning("Token carries no usable 'exp' claim; caching it for %ss", self._fallback_lifetime)
            expires_at = now + self._fallback_lifetime

        credential = Credential(token=token, expires_at=expires_at)
        self._credential = credential
        logger.info("Token cached, valid for %.0fs", expires_at - now)
        return credential


def _consume_result(future: asyncio.Future) -> None:
    # Waiters may all have gone away; retrieve the exception so asyncio does not warn.
    if not future.cancelled():
        future.exception()
