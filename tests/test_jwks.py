# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_token_exchange

import asyncio
from typing import Any

import httpx
import pytest
from authlib.jose import JsonWebKey
from conftest import JWKS_URL, FakeAuthorizationServer, public_jwk

from coreason_token_exchange.exceptions import KeyResolutionError
from coreason_token_exchange.jwks import JWKSCache, SigningKeySet


@pytest.fixture
def cache(http_client: httpx.AsyncClient) -> JWKSCache:
    return JWKSCache(http_client, timeout=1.0)


class TestSigningKeySet:
    def test_indexes_by_kid(self, rsa_key: Any, other_rsa_key: Any) -> None:
        key_set = SigningKeySet.from_jwks({"keys": [public_jwk(rsa_key, "a"), public_jwk(other_rsa_key, "b")]})

        assert len(key_set) == 2
        assert "a" in key_set
        assert key_set.find("a").kty == "RSA"
        assert key_set.find("missing") is None
        assert sorted(key_set.kids) == ["a", "b"]

    def test_single_key_matches_token_without_kid(self, rsa_key: Any) -> None:
        key_set = SigningKeySet.from_jwks({"keys": [public_jwk(rsa_key, "a")]})
        assert key_set.find(None) is not None

    def test_no_kid_is_ambiguous_with_several_keys(self, rsa_key: Any, other_rsa_key: Any) -> None:
        key_set = SigningKeySet.from_jwks({"keys": [public_jwk(rsa_key, "a"), public_jwk(other_rsa_key, "b")]})
        assert key_set.find(None) is None

    def test_symmetric_and_encryption_keys_skipped(self, rsa_key: Any) -> None:
        oct_key = JsonWebKey.generate_key("oct", 256, is_private=True).as_dict(is_private=True)
        oct_key["kid"] = "hmac"
        enc_key = public_jwk(rsa_key, "enc")
        enc_key["use"] = "enc"

        key_set = SigningKeySet.from_jwks({"keys": [oct_key, enc_key, public_jwk(rsa_key, "sig"), "garbage"]})

        assert key_set.kids == ["sig"]

    def test_invalid_entry_skipped(self, rsa_key: Any) -> None:
        key_set = SigningKeySet.from_jwks({"keys": [{"kty": "RSA", "kid": "broken"}, public_jwk(rsa_key, "ok")]})
        assert key_set.kids == ["ok"]

    @pytest.mark.parametrize("document", [[], {}, {"keys": "nope"}, "text", None])
    def test_not_a_jwks(self, document: Any) -> None:
        with pytest.raises(KeyResolutionError, match="'keys' list"):
            SigningKeySet.from_jwks(document)


@pytest.mark.asyncio
async def test_lazy_fetch_then_cache_hit(cache: JWKSCache, auth_server: FakeAuthorizationServer) -> None:
    assert auth_server.calls == 0

    first = await cache.resolve_key_set(JWKS_URL)
    second = await cache.resolve_key_set(JWKS_URL)

    assert first is second
    assert len(auth_server.jwks_requests) == 1


@pytest.mark.asyncio
async def test_get_key_hit_does_not_refetch(cache: JWKSCache, auth_server: FakeAuthorizationServer) -> None:
    assert await cache.get_key(JWKS_URL, "key-1") is not None
    assert await cache.get_key(JWKS_URL, "key-1") is not None
    assert len(auth_server.jwks_requests) == 1


@pytest.mark.asyncio
async def test_miss_refreshes_once(
    cache: JWKSCache, auth_server: FakeAuthorizationServer, rsa_key: Any, other_rsa_key: Any
) -> None:
    await cache.resolve_key_set(JWKS_URL)

    # Keys rotate upstream
    auth_server.jwks = {"keys": [public_jwk(rsa_key, "key-1"), public_jwk(other_rsa_key, "key-2")]}

    key = await cache.get_key(JWKS_URL, "key-2")

    assert key is not None
    assert len(auth_server.jwks_requests) == 2


@pytest.mark.asyncio
async def test_unknown_kid_after_refresh_returns_none(cache: JWKSCache, auth_server: FakeAuthorizationServer) -> None:
    await cache.resolve_key_set(JWKS_URL)

    assert await cache.get_key(JWKS_URL, "never-published") is None
    assert len(auth_server.jwks_requests) == 2


@pytest.mark.asyncio
async def test_first_fetch_miss_does_not_fetch_twice(cache: JWKSCache, auth_server: FakeAuthorizationServer) -> None:
    assert await cache.get_key(JWKS_URL, "never-published") is None
    assert len(auth_server.jwks_requests) == 1


@pytest.mark.asyncio
async def test_concurrent_misses_collapse_into_one_fetch(
    cache: JWKSCache, auth_server: FakeAuthorizationServer, rsa_key: Any, other_rsa_key: Any
) -> None:
    await cache.resolve_key_set(JWKS_URL)
    auth_server.jwks = {"keys": [public_jwk(rsa_key, "key-1"), public_jwk(other_rsa_key, "key-2")]}
    auth_server.jwks_delay = 0.05

    keys = await asyncio.gather(*(cache.get_key(JWKS_URL, "key-2") for _ in range(5)))

    assert all(key is not None for key in keys)
    # One initial fetch plus exactly one collapsed refresh
    assert len(auth_server.jwks_requests) == 2


@pytest.mark.asyncio
async def test_concurrent_first_use_collapse_into_one_fetch(
    cache: JWKSCache, auth_server: FakeAuthorizationServer
) -> None:
    auth_server.jwks_delay = 0.05

    keys = await asyncio.gather(*(cache.get_key(JWKS_URL, "key-1") for _ in range(5)))

    assert all(key is not None for key in keys)
    assert len(auth_server.jwks_requests) == 1


@pytest.mark.asyncio
async def test_readers_not_blocked_by_refresh(
    cache: JWKSCache, auth_server: FakeAuthorizationServer, rsa_key: Any, other_rsa_key: Any
) -> None:
    await cache.resolve_key_set(JWKS_URL)
    auth_server.jwks = {"keys": [public_jwk(rsa_key, "key-1"), public_jwk(other_rsa_key, "key-2")]}
    auth_server.jwks_delay = 0.2

    refresh = asyncio.create_task(cache.get_key(JWKS_URL, "key-2"))
    await asyncio.sleep(0.01)

    # The refresh is still in flight; a cached key is served immediately
    cached = await asyncio.wait_for(cache.get_key(JWKS_URL, "key-1"), timeout=0.1)
    assert cached is not None
    assert not refresh.done()

    assert await refresh is not None


@pytest.mark.asyncio
async def test_fetch_failure_does_not_poison_cache(cache: JWKSCache, auth_server: FakeAuthorizationServer) -> None:
    good_jwks = auth_server.jwks
    auth_server.jwks = {"not": "a jwks"}

    with pytest.raises(KeyResolutionError):
        await cache.get_key(JWKS_URL, "key-1")

    auth_server.jwks = good_jwks
    assert await cache.get_key(JWKS_URL, "key-1") is not None


@pytest.mark.asyncio
async def test_failed_refresh_keeps_previous_keys(cache: JWKSCache, auth_server: FakeAuthorizationServer) -> None:
    await cache.resolve_key_set(JWKS_URL)
    auth_server.jwks = {"not": "a jwks"}

    with pytest.raises(KeyResolutionError):
        await cache.get_key(JWKS_URL, "rotated")

    # Previously cached keys still serve
    assert await cache.get_key(JWKS_URL, "key-1") is not None


@pytest.mark.asyncio
async def test_bad_status_not_retried() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(503, text="unavailable")

    cache = JWKSCache(httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    with pytest.raises(KeyResolutionError, match="HTTP 503"):
        await cache.resolve_key_set(JWKS_URL)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_invalid_json() -> None:
    cache = JWKSCache(httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, text="<html>"))))

    with pytest.raises(KeyResolutionError, match="not valid JSON"):
        await cache.resolve_key_set(JWKS_URL)


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ['{"keys": [], "max_age": NaN}', "9" * 5000])
async def test_non_standard_json(text: str) -> None:
    cache = JWKSCache(httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, text=text))))

    with pytest.raises(KeyResolutionError, match="not valid JSON"):
        await cache.resolve_key_set(JWKS_URL)


@pytest.mark.asyncio
async def test_network_errors_retried_then_surface(rsa_key: Any) -> None:
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) < 3:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"keys": [public_jwk(rsa_key, "key-1")]})

    cache = JWKSCache(httpx.AsyncClient(transport=httpx.MockTransport(handler)), fetch_attempts=3)
    assert await cache.get_key(JWKS_URL, "key-1") is not None
    assert len(attempts) == 3

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down", request=request)

    failing = JWKSCache(httpx.AsyncClient(transport=httpx.MockTransport(unreachable)), fetch_attempts=2)
    with pytest.raises(KeyResolutionError, match="Failed to fetch JWKS"):
        await failing.resolve_key_set(JWKS_URL)


@pytest.mark.asyncio
async def test_refresh_cooldown(
    http_client: httpx.AsyncClient, auth_server: FakeAuthorizationServer, rsa_key: Any, other_rsa_key: Any
) -> None:
    cache = JWKSCache(http_client, refresh_cooldown=60.0)
    await cache.resolve_key_set(JWKS_URL)
    auth_server.jwks = {"keys": [public_jwk(rsa_key, "key-1"), public_jwk(other_rsa_key, "key-2")]}

    assert await cache.get_key(JWKS_URL, "key-2") is None
    assert len(auth_server.jwks_requests) == 1


@pytest.mark.asyncio
async def test_invalidate(cache: JWKSCache, auth_server: FakeAuthorizationServer) -> None:
    await cache.resolve_key_set(JWKS_URL)
    cache.invalidate(JWKS_URL)
    await cache.resolve_key_set(JWKS_URL)
    cache.invalidate()
    await cache.resolve_key_set(JWKS_URL)

    assert len(auth_server.jwks_requests) == 3


@pytest.mark.asyncio
async def test_cached_per_url(cache: JWKSCache, auth_server: FakeAuthorizationServer) -> None:
    await cache.resolve_key_set(JWKS_URL)
    with pytest.raises(KeyResolutionError):
        # Unknown path answers 404 on the fake server
        await cache.resolve_key_set("https://auth.example.com/other/jwks.json")

    assert await cache.get_key(JWKS_URL, "key-1") is not None
