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
Request handlers for the exchange (pass-through) and callback (verified) endpoints.

Each inbound request maps to exactly one exchange attempt. Failures are caught here
and shaped into short, machine-readable responses; the client secret never leaves.
"""

from typing import Any

import httpx
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from pydantic import BaseModel

from coreason_token_exchange.config import ConfigResolver, TokenExchangeConfig
from coreason_token_exchange.exceptions import (
    ConfigurationError,
    ExchangeError,
    ExchangeErrorKind,
    KeyResolutionError,
    OversizedResponseError,
    TokenExchangeServiceError,
    VerificationError,
)
from coreason_token_exchange.jwks import JWKSCache
from coreason_token_exchange.models import CallbackBody, ExchangeBody, ExchangeRequest
from coreason_token_exchange.token_exchanger import TokenExchanger
from coreason_token_exchange.transport import build_client
from coreason_token_exchange.utils.logger import logger
from coreason_token_exchange.utils.redaction import redact_secrets
from coreason_token_exchange.verifier import IDTokenVerifier


class HandlerResponse(BaseModel):
    """An HTTP status and JSON body, ready to be rendered."""

    status_code: int
    body: dict[str, Any]


def _missing_code() -> HandlerResponse:
    return HandlerResponse(status_code=400, body={"error": "missing_code"})


def _scrub(value: Any, config: TokenExchangeConfig | None) -> Any:
    if config is None:
        return value
    credentials = config.credentials
    return redact_secrets(value, [credentials.client_secret.get_secret_value(), credentials.basic_token()])


class OutboundResources:
    """
    The outbound HTTP client and JWKS cache shared by both handlers.

    Anything not supplied up front is built from the first resolved configuration, so a
    service started before its environment was complete still honours `http_timeout`,
    `max_response_bytes`, `jwks_refresh_cooldown` and `unsafe_local_dev`.
    """

    def __init__(self, client: httpx.AsyncClient | None = None, key_cache: JWKSCache | None = None) -> None:
        self._client = client
        self._key_cache = key_cache
        self.owns_client = client is None

    def client(self, config: TokenExchangeConfig) -> httpx.AsyncClient:
        if self._client is None:
            self._client = build_client(config.http_timeout, unsafe_local_dev=config.unsafe_local_dev)
            HTTPXClientInstrumentor().instrument_client(self._client)
        return self._client

    def key_cache(self, config: TokenExchangeConfig) -> JWKSCache:
        if self._key_cache is None:
            self._key_cache = JWKSCache(
                self.client(config),
                timeout=config.http_timeout,
                max_response_bytes=config.max_response_bytes,
                refresh_cooldown=config.jwks_refresh_cooldown,
            )
        return self._key_cache

    async def aclose(self) -> None:
        if self.owns_client and self._client is not None:
            await self._client.aclose()


def build_exchanger(config: TokenExchangeConfig, client: httpx.AsyncClient) -> TokenExchanger:
    if config.token_endpoint is None:
        raise ConfigurationError("Token endpoint is not configured", missing_keys=["COREASON_OAUTH_TOKEN_ENDPOINT"])
    return TokenExchanger(
        client=client,
        token_endpoint=config.token_endpoint,
        credentials=config.credentials,
        timeout=config.http_timeout,
        max_response_bytes=config.max_response_bytes,
    )


class ExchangeHandler:
    """
    Pass-through variant: redeems the code and returns the upstream status and body as-is.

    The token is not verified here. Upstream failures are still answered with HTTP 200,
    encoded in the `status` and `data` fields, because callers branch on those.
    """

    def __init__(self, resolver: ConfigResolver, outbound: OutboundResources) -> None:
        self.resolver = resolver
        self.outbound = outbound

    async def handle(self, body: ExchangeBody) -> HandlerResponse:
        if not body.code:
            return _missing_code()

        config: TokenExchangeConfig | None = None
        try:
            config = self.resolver.resolve()
            request = ExchangeRequest(code=body.code, redirect_uri=config.redirect_uri, state=body.state)
            result = await build_exchanger(config, self.outbound.client(config)).exchange_code_raw(request)
        except TokenExchangeServiceError as e:
            logger.error(f"Code exchange failed: {type(e).__name__}: {_scrub(str(e), config)}")
            return HandlerResponse(
                status_code=500,
                body={"error": "exchange_failed", "message": _scrub(str(e), config)},
            )
        except Exception:
            logger.exception("Unexpected error during code exchange")
            return HandlerResponse(status_code=500, body={"error": "exchange_failed", "message": "Internal error"})

        return HandlerResponse(
            status_code=200,
            body={"state": body.state, "status": result.status_code, "data": _scrub(result.data, config)},
        )


class CallbackHandler:
    """
    Verified variant: redeems the code, then verifies the returned ID token.

    Claims are only returned after signature, issuer, audience and expiry checks pass.
    """

    def __init__(self, resolver: ConfigResolver, outbound: OutboundResources) -> None:
        self.resolver = resolver
        self.outbound = outbound
        self._verifier: IDTokenVerifier | None = None

    def _get_verifier(self, config: TokenExchangeConfig) -> IDTokenVerifier:
        if self._verifier is None:
            self._verifier = IDTokenVerifier(
                key_cache=self.outbound.key_cache(config),
                jwks_url=config.jwks_url,
                issuer=config.issuer,
                audience=config.client_id,
                allowed_algorithms=config.allowed_algorithms,
                leeway=config.clock_skew_leeway,
                pii_salt=config.pii_salt,
            )
        return self._verifier

    async def handle(self, body: CallbackBody) -> HandlerResponse:
        if not body.code:
            return _missing_code()

        try:
            config = self.resolver.resolve()
        except ConfigurationError as e:
            return HandlerResponse(status_code=500, body={"error": "configuration_error", "message": str(e)})

        request = ExchangeRequest(code=body.code, redirect_uri=body.redirect_uri or config.redirect_uri)

        try:
            tokens = await build_exchanger(config, self.outbound.client(config)).exchange_code(request, require_id_token=True)
        except ExchangeError as e:
            return self._exchange_failure(e, config)
        except OversizedResponseError as e:
            logger.error(f"Token endpoint response rejected: {e}")
            return HandlerResponse(status_code=502, body={"error": "token_exchange_unreachable", "message": str(e)})

        try:
            verified = await self._get_verifier(config).verify(tokens.id_token or "")
        except VerificationError as e:
            return HandlerResponse(
                status_code=401,
                body={"error": "id_token_verification_failed", "check": e.check, "message": str(e)},
            )
        except KeyResolutionError as e:
            logger.error(f"Signing keys unavailable: {e}")
            return HandlerResponse(
                status_code=502,
                body={"error": "id_token_verification_failed", "check": "key_resolution", "message": str(e)},
            )

        return HandlerResponse(
            status_code=200,
            body={"ok": True, "header": verified.header, "claims": verified.claims},
        )

    def _exchange_failure(self, error: ExchangeError, config: TokenExchangeConfig) -> HandlerResponse:
        if error.kind == ExchangeErrorKind.MISSING_ID_TOKEN:
            return HandlerResponse(
                status_code=400,
                body={"error": "missing_id_token", "data": _scrub(error.data, config)},
            )
        if error.kind == ExchangeErrorKind.TIMEOUT:
            return HandlerResponse(status_code=504, body={"error": "token_exchange_timeout"})
        if error.kind == ExchangeErrorKind.NETWORK_FAILURE:
            return HandlerResponse(status_code=502, body={"error": "token_exchange_unreachable"})
        return HandlerResponse(
            status_code=400,
            body={"error": "token_exchange_failed", "status": error.status_code, "data": _scrub(error.data, config)},
        )
