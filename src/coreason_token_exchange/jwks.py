# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_token_exchange

"""
JWKS component for fetching, caching and looking up signing keys.
"""

import time
from dataclasses import dataclass, field
from typing import Any

import anyio
import httpx
from authlib.jose import JsonWebKey
from authlib.jose.errors import JoseError
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from coreason_token_exchange.exceptions import KeyResolutionError, OversizedResponseError
from coreason_token_exchange.transport import SecurityError, loads_strict, read_limited_body
from coreason_token_exchange.utils.logger import logger

tracer = trace.get_tracer(__name__)

# Public key types only. Symmetric ("oct") entries are never imported.
SUPPORTED_KEY_TYPES = frozenset({"RSA", "EC", "OKP"})


class SigningKeySet:
    """
    An authorization server's published public keys, indexed by `kid`.
    """

    def __init__(self, keys: dict[str | None, Any]) -> None:
        self._keys = keys

    @classmethod
    def from_jwks(cls, document: Any) -> "SigningKeySet":
        """
        Builds a key set from a JWKS document.

        Entries that are not public signing keys, or cannot be imported, are skipped.

        Args:
            document: The parsed JWKS JSON.

        Returns:
            SigningKeySet: The usable keys.

        Raises:
            KeyResolutionError: If the document is not a JWKS.
        """
        if not isinstance(document, dict) or not isinstance(document.get("keys"), list):
            raise KeyResolutionError("JWKS document does not contain a 'keys' list")

        keys: dict[str | None, Any] = {}
        for jwk in document["keys"]:
            if not isinstance(jwk, dict):
                continue
            kty = jwk.get("kty")
            if kty not in SUPPORTED_KEY_TYPES:
                logger.warning(f"Skipping JWKS entry with unsupported key type {kty!r}")
                continue
            if jwk.get("use", "sig") != "sig":
                continue
            try:
                keys[jwk.get("kid")] = JsonWebKey.import_key(jwk)
            except (JoseError, ValueError, TypeError, KeyError) as e:
                logger.warning(f"Skipping invalid JWKS entry (kid={jwk.get('kid')!r}): {e}")

        return cls(keys)

    def find(self, kid: str | None) -> Any | None:
        """
        Looks a key up by `kid`.

        A token without a `kid` can only be matched when the set holds exactly one key.
        """
        if kid is None:
            if len(self._keys) == 1:
                return next(iter(self._keys.values()))
            return None
        return self._keys.get(kid)

    @property
    def kids(self) -> list[str | None]:
        return list(self._keys)

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, kid: object) -> bool:
        return kid in self._keys


@dataclass
class _CacheEntry:
    key_set: SigningKeySet | None = None
    generation: int = 0
    last_refresh: float = 0.0
    lock: anyio.Lock = field(default_factory=anyio.Lock)


class JWKSCache:
    """
    Process-wide cache of key sets, one per JWKS URL.

    Readers of a populated entry never wait. A lookup miss refreshes the entry once, and
    concurrent refreshes of the same URL collapse into a single fetch. A failed fetch
    leaves the entry untouched so the next request tries again.

    Attributes:
        client (httpx.AsyncClient): The outbound HTTP client.
        timeout (float): Request timeout in seconds.
        refresh_cooldown (float): Minimum seconds between refreshes of a populated entry. 0 disables.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        timeout: float = 10.0,
        max_response_bytes: int = 1_000_000,
        refresh_cooldown: float = 0.0,
        fetch_attempts: int = 3,
    ) -> None:
        self.client = client
        self.timeout = timeout
        self.max_response_bytes = max_response_bytes
        self.refresh_cooldown = refresh_cooldown
        self.fetch_attempts = fetch_attempts
        self._entries: dict[str, _CacheEntry] = {}

    def _entry(self, jwks_url: str) -> _CacheEntry:
        entry = self._entries.get(jwks_url)
        if entry is None:
            entry = self._entries[jwks_url] = _CacheEntry()
        return entry

    async def _fetch_once(self, jwks_url: str) -> SigningKeySet:
        async with self.client.stream("GET", jwks_url, timeout=self.timeout) as response:
            body = await read_limited_body(response, self.max_response_bytes)
            if response.status_code != 200:
                raise KeyResolutionError(f"JWKS endpoint {jwks_url} answered HTTP {response.status_code}")
        try:
            document = loads_strict(body)
        except ValueError as e:
            raise KeyResolutionError(f"JWKS from {jwks_url} is not valid JSON") from e
        return SigningKeySet.from_jwks(document)

    async def _fetch(self, jwks_url: str) -> SigningKeySet:
        """
        Fetches the JWKS from the given URL.

        Retries on `httpx.HTTPError` with exponential backoff (initial=0.1s, max=1.0s).
        Bad status codes and unparseable documents are not retried.

        Raises:
            KeyResolutionError: If the request fails after retries or returns invalid data.
        """
        wait_initial = 0.1
        wait_max = 1.0

        with tracer.start_as_current_span("jwks_fetch") as span:
            span.set_attribute("jwks.url", jwks_url)
            for attempt in range(self.fetch_attempts):
                try:
                    key_set = await self._fetch_once(jwks_url)
                    span.set_attribute("jwks.key_count", len(key_set))
                    span.set_status(Status(StatusCode.OK))
                    return key_set
                except KeyResolutionError as e:
                    span.record_exception(e)
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    raise
                except (OversizedResponseError, SecurityError) as e:
                    span.record_exception(e)
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    raise KeyResolutionError(f"Failed to fetch JWKS from {jwks_url}: {e}") from e
                except httpx.HTTPError as e:
                    if attempt == self.fetch_attempts - 1:
                        span.record_exception(e)
                        span.set_status(Status(StatusCode.ERROR, str(e)))
                        raise KeyResolutionError(f"Failed to fetch JWKS from {jwks_url}: {e}") from e
                    logger.warning(f"JWKS fetch attempt {attempt + 1} failed: {e}")
                    await anyio.sleep(min(wait_initial * (2**attempt), wait_max))

        raise KeyResolutionError(f"Failed to fetch JWKS from {jwks_url}")  # pragma: no cover

    async def _refresh(self, jwks_url: str, entry: _CacheEntry, seen_generation: int) -> SigningKeySet:
        """
        Replaces the cached key set, unless another task already did so since `seen_generation`.
        """
        async with entry.lock:
            if entry.key_set is not None and entry.generation != seen_generation:
                return entry.key_set

            now = time.monotonic()
            if entry.key_set is not None and self.refresh_cooldown and now - entry.last_refresh < self.refresh_cooldown:
                logger.warning("JWKS refresh cooldown active. Returning cached keys.")
                return entry.key_set

            key_set = await self._fetch(jwks_url)
            entry.key_set = key_set
            entry.generation += 1
            entry.last_refresh = now
            logger.info(f"Loaded {len(key_set)} signing key(s) from {jwks_url}")
            return key_set

    async def resolve_key_set(self, jwks_url: str) -> SigningKeySet:
        """
        Returns the cached key set for `jwks_url`, fetching it on first use.

        Raises:
            KeyResolutionError: If the key set cannot be fetched or parsed.
        """
        entry = self._entry(jwks_url)
        if entry.key_set is not None:
            return entry.key_set
        return await self._refresh(jwks_url, entry, entry.generation)

    async def get_key(self, jwks_url: str, kid: str | None) -> Any | None:
        """
        Looks up a signing key, refreshing the key set once on a miss.

        Args:
            jwks_url: The JWKS endpoint.
            kid: The key id from the token header.

        Returns:
            The authlib key, or None if no published key matches even after a refresh.

        Raises:
            KeyResolutionError: If the key set cannot be fetched or parsed.
        """
        entry = self._entry(jwks_url)
        seen_generation = entry.generation
        key_set = entry.key_set
        refreshed = False

        if key_set is None:
            key_set = await self._refresh(jwks_url, entry, seen_generation)
            refreshed = True

        key = key_set.find(kid)
        if key is None and not refreshed:
            logger.info(f"Key {kid!r} not in cached JWKS, refreshing")
            key_set = await self._refresh(jwks_url, entry, seen_generation)
            key = key_set.find(kid)

        return key

    def invalidate(self, jwks_url: str | None = None) -> None:
        """
        Drops the cached key set for one URL, or for all URLs.
        """
        if jwks_url is None:
            self._entries.clear()
        else:
            self._entries.pop(jwks_url, None)
