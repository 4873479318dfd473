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
FastAPI application exposing the OAuth exchange and callback endpoints.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from coreason_token_exchange import __version__
from coreason_token_exchange.config import ConfigResolver, TokenExchangeConfig
from coreason_token_exchange.handlers import CallbackHandler, ExchangeHandler, HandlerResponse, OutboundResources
from coreason_token_exchange.jwks import JWKSCache
from coreason_token_exchange.models import CallbackBody, ExchangeBody
from coreason_token_exchange.utils.logger import logger


def _render(result: HandlerResponse) -> JSONResponse:
    return JSONResponse(status_code=result.status_code, content=result.body)


def create_app(
    config: TokenExchangeConfig | None = None,
    client: httpx.AsyncClient | None = None,
    key_cache: JWKSCache | None = None,
) -> FastAPI:
    """
    Builds the application.

    Nothing is resolved or connected until the first OAuth request. A service started before
    its environment is complete answers 500 until the configuration resolves, then builds its
    client and key cache from that configuration.

    Args:
        config: Explicit configuration. Loaded from the environment on first use when omitted.
        client: External async client (optional). If not provided, one is created and closed on shutdown.
        key_cache: External key cache (optional). One is created per application when omitted.

    Returns:
        FastAPI: The application.
    """
    resolver = ConfigResolver(config)
    outbound = OutboundResources(client, key_cache)

    exchange_handler = ExchangeHandler(resolver, outbound)
    callback_handler = CallbackHandler(resolver, outbound)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        await outbound.aclose()

    app = FastAPI(title="coreason-token-exchange", version=__version__, lifespan=lifespan)
    app.state.outbound = outbound

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.url.path}")
        return JSONResponse(status_code=500, content={"error": "internal_error"})

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/oauth/exchange")
    async def exchange(body: ExchangeBody | None = None) -> JSONResponse:
        return _render(await exchange_handler.handle(body or ExchangeBody()))

    @app.post("/oauth/callback")
    async def callback(body: CallbackBody | None = None) -> JSONResponse:
        return _render(await callback_handler.handle(body or CallbackBody()))

    return app
