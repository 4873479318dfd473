# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_token_exchange

import os
import socket
import time
from collections.abc import Awaitable, Callable, Generator
from typing import Any
from unittest.mock import MagicMock, patch

import anyio
import httpx
import pytest
from authlib.jose import JsonWebKey, jwt
from pydantic import SecretStr

from coreason_token_exchange.config import TokenExchangeConfig

ISSUER = "https://auth.example.com"
JWKS_URL = "https://auth.example.com/.well-known/jwks.json"
TOKEN_ENDPOINT = "https://auth.example.com/oauth2/token"
CLIENT_ID = "casper-dashboard"
CLIENT_SECRET = "s3cr3t-client-value"
REDIRECT_URI = "https://dashboard.example.com/callback"


@pytest.fixture(autouse=True)
def mock_dns_resolution() -> Generator[MagicMock, None, None]:
    """
    Globally patches socket.getaddrinfo to return a safe public IP by default,
    so SafeHTTPTransport accepts the dummy hosts used in tests.
    """
    safe_response = [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("8.8.8.8", 443))]

    with patch("socket.getaddrinfo", return_value=safe_response) as mock:
        yield mock


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Removes any COREASON_OAUTH_* variables inherited from the host."""
    for name in list(os.environ):
        if name.upper().startswith("COREASON_OAUTH_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config() -> TokenExchangeConfig:
    return TokenExchangeConfig(
        issuer=ISSUER,
        jwks_url=JWKS_URL,
        client_id=CLIENT_ID,
        client_secret=SecretStr(CLIENT_SECRET),
        redirect_uri=REDIRECT_URI,
        http_timeout=2.0,
    )


@pytest.fixture(scope="session")
def rsa_key() -> Any:
    return JsonWebKey.generate_key("RSA", 2048, is_private=True)


@pytest.fixture(scope="session")
def other_rsa_key() -> Any:
    return JsonWebKey.generate_key("RSA", 2048, is_private=True)


def public_jwk(key: Any, kid: str) -> dict[str, Any]:
    jwk = key.as_dict(is_private=False)
    jwk.update({"kid": kid, "use": "sig", "alg": "RS256"})
    return jwk


def make_token(
    key: Any,
    claims: dict[str, Any] | None = None,
    kid: str = "key-1",
    alg: str = "RS256",
    **overrides: Any,
) -> str:
    """Signs an ID token with sensible defaults for the test issuer and client."""
    now = int(time.time())
    payload = {
        "sub": "user-42",
        "iss": ISSUER,
        "aud": CLIENT_ID,
        "iat": now,
        "nbf": now,
        "exp": now + 600,
        "username": "alice",
        "displayName": "Alice",
    }
    if claims:
        payload.update(claims)
    payload.update(overrides)
    token = jwt.encode({"alg": alg, "kid": kid}, payload, key)
    return token.decode("utf-8")


Responder = Callable[[httpx.Request], httpx.Response | Awaitable[httpx.Response]]


class FakeAuthorizationServer:
    """
    In-process stand-in for the authorization server's token and JWKS endpoints.
    """

    def __init__(self, jwks: dict[str, Any]) -> None:
        self.jwks = jwks
        self.token_status = 200
        self.token_body: Any = {}
        self.token_responder: Responder | None = None
        self.jwks_delay = 0.0
        self.token_requests: list[httpx.Request] = []
        self.jwks_requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth2/token":
            self.token_requests.append(request)
            if self.token_responder is not None:
                response = self.token_responder(request)
                if not isinstance(response, httpx.Response):
                    response = await response
                return response
            if isinstance(self.token_body, (bytes, str)):
                return httpx.Response(self.token_status, content=self.token_body)
            return httpx.Response(self.token_status, json=self.token_body)
        if request.url.path == "/.well-known/jwks.json":
            self.jwks_requests.append(request)
            if self.jwks_delay:
                await anyio.sleep(self.jwks_delay)
            return httpx.Response(200, json=self.jwks)
        return httpx.Response(404, json={"error": "not_found"})

    @property
    def calls(self) -> int:
        return len(self.token_requests) + len(self.jwks_requests)


@pytest.fixture
def auth_server(rsa_key: Any) -> FakeAuthorizationServer:
    return FakeAuthorizationServer({"keys": [public_jwk(rsa_key, "key-1")]})


@pytest.fixture
def http_client(auth_server: FakeAuthorizationServer) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(auth_server))
