"""Tests for the credential cache and provider loading."""

import asyncio
import sys
import types

import jwt
import pytest

from conftest import make_token
from osgen.config import Settings
from osgen.credentials import (
    Credential,
    CredentialCache,
    FunctionProvider,
    StaticTokenProvider,
    build_provider,
    load_provider,
    token_expiry,
)
from osgen.errors import AuthFailure, ConfigurationError


class GatedProvider:
    """Blocks inside ``authenticate`` until released, so refreshes overlap."""

    def __init__(self, token=None, error=None):
        self.token = token or make_token()
        self.error = error
        self.calls = 0
        self.gate = asyncio.Event()

    async def authenticate(self, hostname, username, password):
        self.calls += 1
        await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.token


class Clock:
    def __init__(self, now=1_000.0):
        self.now = now

    def __call__(self):
        return self.now


async def _settle():
    for _ in range(5):
        await asyncio.sleep(0)


class TestCredential:
    def test_fresh_before_skew(self):
        cred = Credential(token="t", expires_at=1000)
        assert cred.is_fresh(899, 100) is True
        assert cred.is_fresh(900, 100) is False

    def test_token_hidden_from_repr(self):
        assert "secret-token" not in repr(Credential(token="secret-token", expires_at=1))


class TestTokenExpiry:
    def test_reads_exp_claim(self):
        assert token_expiry(make_token(exp=1_900_000_000)) == 1_900_000_000.0

    def test_not_a_jwt(self):
        assert token_expiry("opaque-token") is None

    def test_non_numeric_exp(self):
        token = jwt.encode({"exp": True, "sub": "x"}, "k", algorithm="HS256")
        assert token_expiry(token) is None


class TestCredentialCache:
    @pytest.mark.asyncio
    async def test_fresh_credential_served_without_provider_call(self):
        provider = GatedProvider(token=make_token(exp=5_000))
        provider.gate.set()
        cache = CredentialCache(provider, "env.outsystems.dev", clock=Clock(1_000))

        first = await cache.get_token()
        results = await asyncio.gather(*(cache.get_token() for _ in range(10)))

        assert provider.calls == 1
        assert all(r is first for r in results)

    @pytest.mark.asyncio
    async def test_concurrent_refresh_is_single_flight(self):
        provider = GatedProvider(token=make_token(exp=5_000))
        cache = CredentialCache(provider, "env.outsystems.dev", clock=Clock(1_000))

        tasks = [asyncio.create_task(cache.get_token()) for _ in range(5)]
        await _settle()
        assert provider.calls == 1
        assert cache.refreshing is True

        provider.gate.set()
        results = await asyncio.gather(*tasks)

        assert provider.calls == 1
        assert len({id(r) for r in results}) == 1
        assert results[0].expires_at == 5_000
        assert cache.refreshing is False

    @pytest.mark.asyncio
    async def test_failure_reaches_every_waiter_and_is_not_cached(self):
        provider = GatedProvider(error=RuntimeError("directory unavailable"))
        cache = CredentialCache(provider, "env.outsystems.dev", clock=Clock(1_000))

        tasks = [asyncio.create_task(cache.get_token()) for _ in range(3)]
        await _settle()
        provider.gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert provider.calls == 1
        assert all(isinstance(r, AuthFailure) for r in results)
        assert all(r is results[0] for r in results)
        assert "directory unavailable" in results[0].message
        assert cache.credential is None

        provider.error = None
        credential = await cache.get_token()
        assert provider.calls == 2
        assert credential.token == provider.token

    @pytest.mark.asyncio
    async def test_empty_token_is_auth_failure(self):
        provider = StaticTokenProvider("")
        cache = CredentialCache(provider, "env.outsystems.dev")
        with pytest.raises(AuthFailure):
            await cache.get_token()

    @pytest.mark.asyncio
    async def test_refreshes_inside_skew_window(self):
        clock = Clock(1_000)
        provider = GatedProvider(token=make_token(exp=2_000))
        provider.gate.set()
        cache = CredentialCache(provider, "h", refresh_skew=60, clock=clock)

        await cache.get_token()
        clock.now = 1_939
        await cache.get_token()
        assert provider.calls == 1

        clock.now = 1_941
        await cache.get_token()
        assert provider.calls == 2

    @pytest.mark.asyncio
    async def test_token_without_exp_uses_fallback_lifetime(self):
        clock = Clock(1_000)
        provider = GatedProvider(token="opaque-token")
        provider.gate.set()
        cache = CredentialCache(provider, "h", refresh_skew=10, fallback_lifetime=60, clock=clock)

        credential = await cache.get_token()
        assert credential.expires_at == 1_060

        clock.now = 1_049
        await cache.get_token()
        assert provider.calls == 1

        clock.now = 1_051
        await cache.get_token()
        assert provider.calls == 2

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_shared_refresh(self):
        provider = GatedProvider(token=make_token(exp=5_000))
        cache = CredentialCache(provider, "h", clock=Clock(1_000))

        doomed = asyncio.create_task(cache.get_token())
        survivor = asyncio.create_task(cache.get_token())
        await _settle()
        doomed.cancel()
        await _settle()
        provider.gate.set()

        credential = await survivor
        assert credential.token == provider.token
        assert provider.calls == 1
        assert doomed.cancelled()

    @pytest.mark.asyncio
    async def test_invalidate_forces_refresh(self):
        provider = GatedProvider()
        provider.gate.set()
        cache = CredentialCache(provider, "h")

        await cache.get_token()
        cache.invalidate()
        assert cache.credential is None
        await cache.get_token()
        assert provider.calls == 2

    @pytest.mark.asyncio
    async def test_from_settings_passes_principal(self):
        seen = {}

        async def authenticate(hostname, username, password):
            seen.update(hostname=hostname, username=username, password=password)
            return make_token()

        settings = Settings(hostname="env.outsystems.dev", username="dev@example.com", password="pw")
        cache = CredentialCache.from_settings(settings, provider=FunctionProvider(authenticate))
        await cache.get_token()

        assert seen == {"hostname": "env.outsystems.dev", "username": "dev@example.com", "password": "pw"}


class TestProviderLoading:
    @pytest.fixture
    def provider_module(self, monkeypatch):
        module = types.ModuleType("osgen_test_providers")

        async def authenticate(hostname, username, password):
            return "from-function"

        class Provider:
            async def authenticate(self, hostname, username, password):
                return "from-class"

        module.authenticate = authenticate
        module.Provider = Provider
        module.instance = Provider()
        module.not_a_provider = 42
        monkeypatch.setitem(sys.modules, "osgen_test_providers", module)
        return module

    @pytest.mark.asyncio
    async def test_coroutine_function(self, provider_module):
        provider = load_provider("osgen_test_providers:authenticate")
        assert await provider.authenticate("h", "u", "p") == "from-function"

    @pytest.mark.asyncio
    async def test_factory(self, provider_module):
        provider = load_provider("osgen_test_providers:Provider")
        assert await provider.authenticate("h", "u", "p") == "from-class"

    def test_instance(self, provider_module):
        assert load_provider("osgen_test_providers:instance") is provider_module.instance

    @pytest.mark.parametrize("spec", [
        "no-colon",
        "osgen_test_providers:missing",
        "osgen_test_providers:not_a_provider",
        "definitely_not_a_module_xyz:thing",
    ])
    def test_bad_specs(self, provider_module, spec):
        with pytest.raises(ConfigurationError):
            load_provider(spec)

    def test_static_token_wins(self):
        settings = Settings(hostname="h", static_token="tok", credential_provider="x:y")
        assert isinstance(build_provider(settings), StaticTokenProvider)

    def test_nothing_configured(self):
        with pytest.raises(ConfigurationError):
            build_provider(Settings(hostname="h"))
