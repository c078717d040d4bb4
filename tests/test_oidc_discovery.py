"""
tests/test_oidc_discovery.py -- ProviderMetadataCache against the FakeIdp.

Coverage:
  - First get() fetches the discovery document; later calls are served from cache
  - Concurrent first calls trigger exactly one fetch and share one object
  - HTTP, JSON, timeout and issuer problems raise DiscoveryError
  - A failed discovery leaves the cache empty so the next call retries
  - reset() forces a new fetch
"""

from __future__ import annotations

import asyncio

import httpx
import pytest

from auth.errors import AuthErrorKind, DiscoveryError
from auth.oidc import ProviderMetadataCache, mask_secret

from conftest import ISSUER, FakeIdp

DISCOVERY_PATH = "/.well-known/openid-configuration"


def _cache(idp: FakeIdp, issuer: str = ISSUER) -> ProviderMetadataCache:
    return ProviderMetadataCache(issuer, timeout=5.0, transport=idp.transport)


class TestProviderMetadataCache:
    @pytest.mark.asyncio
    async def test_loads_endpoints(self, idp: FakeIdp) -> None:
        metadata = await _cache(idp).get()
        assert metadata.issuer == ISSUER
        assert metadata.authorization_endpoint == f"{ISSUER}/authorize"
        assert metadata.token_endpoint == f"{ISSUER}/token"
        assert metadata.jwks_uri == f"{ISSUER}/jwks"
        assert metadata.end_session_endpoint == f"{ISSUER}/logout"
        assert metadata.raw["code_challenge_methods_supported"] == ["S256"]

    @pytest.mark.asyncio
    async def test_second_call_served_from_cache(self, idp: FakeIdp) -> None:
        cache = _cache(idp)
        first = await cache.get()
        second = await cache.get()
        assert first is second
        assert idp.calls[DISCOVERY_PATH] == 1

    @pytest.mark.asyncio
    async def test_concurrent_first_calls_fetch_once(self, idp: FakeIdp) -> None:
        cache = _cache(idp)
        results = await asyncio.gather(*(cache.get() for _ in range(10)))
        assert idp.calls[DISCOVERY_PATH] == 1
        assert all(r is results[0] for r in results)

    @pytest.mark.asyncio
    async def test_trailing_slash_on_issuer(self, idp: FakeIdp) -> None:
        cache = _cache(idp, issuer=f"{ISSUER}/")
        assert cache.discovery_url == f"{ISSUER}{DISCOVERY_PATH}"
        assert (await cache.get()).issuer == ISSUER

    @pytest.mark.asyncio
    async def test_missing_end_session_endpoint(self, idp: FakeIdp) -> None:
        idp.end_session = False
        assert (await _cache(idp).get()).end_session_endpoint is None

    @pytest.mark.asyncio
    async def test_reset_forces_refetch(self, idp: FakeIdp) -> None:
        cache = _cache(idp)
        await cache.get()
        cache.reset()
        await cache.get()
        assert idp.calls[DISCOVERY_PATH] == 2


class TestDiscoveryFailures:
    @pytest.mark.asyncio
    async def test_http_error(self, idp: FakeIdp) -> None:
        idp.discovery_status = 503
        with pytest.raises(DiscoveryError) as excinfo:
            await _cache(idp).get()
        assert excinfo.value.to_auth_error().kind is AuthErrorKind.DISCOVERY_FAILURE

    @pytest.mark.asyncio
    async def test_failure_does_not_poison_cache(self, idp: FakeIdp) -> None:
        cache = _cache(idp)
        idp.discovery_status = 500
        with pytest.raises(DiscoveryError):
            await cache.get()

        idp.discovery_status = 200
        metadata = await cache.get()
        assert metadata.token_endpoint == f"{ISSUER}/token"
        assert idp.calls[DISCOVERY_PATH] == 2

    @pytest.mark.asyncio
    async def test_issuer_mismatch(self, idp: FakeIdp) -> None:
        idp.discovery_overrides = {"issuer": "https://evil.example.test"}
        with pytest.raises(DiscoveryError, match="does not match"):
            await _cache(idp).get()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["authorization_endpoint", "token_endpoint", "jwks_uri"])
    async def test_missing_required_endpoint(self, idp: FakeIdp, field: str) -> None:
        idp.discovery_overrides = {field: ""}
        with pytest.raises(DiscoveryError, match=field):
            await _cache(idp).get()

    @pytest.mark.asyncio
    async def test_non_json_body(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>login</html>"))
        with pytest.raises(DiscoveryError, match="not JSON"):
            await ProviderMetadataCache(ISSUER, transport=transport).get()

    @pytest.mark.asyncio
    async def test_non_object_json(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json=["not", "an", "object"]))
        with pytest.raises(DiscoveryError):
            await ProviderMetadataCache(ISSUER, transport=transport).get()

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        def timeout(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(DiscoveryError, match="timed out"):
            await ProviderMetadataCache(ISSUER, transport=httpx.MockTransport(timeout)).get()

    @pytest.mark.asyncio
    async def test_unreachable(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(DiscoveryError, match="Cannot reach"):
            await ProviderMetadataCache(ISSUER, transport=httpx.MockTransport(refuse)).get()


class TestMaskSecret:
    def test_long_secret(self) -> None:
        assert mask_secret("abcdefghijklmnop") == "abcd****...****mnop"

    @pytest.mark.parametrize("value", ["", "short", "12345678"])
    def test_short_secret(self, value: str) -> None:
        assert mask_secret(value) == "****"
