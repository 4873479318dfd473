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
Data models for the coreason-token-exchange package.
"""

import base64
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    ValidatorFunctionWrapHandler,
    field_validator,
)


class ExchangeRequest(BaseModel):
    """
    A single authorization-code redemption. Discarded after one use.

    This model is frozen (immutable) so the code cannot be swapped mid-flight.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    code: str = Field(..., min_length=1, description="Opaque, single-use authorization code.")
    redirect_uri: str = Field(..., description="Must match the URI used for the original authorization request.")
    state: str | None = Field(default=None, description="CSRF correlation value. Passed through unverified.")


class ClientCredentials(BaseModel):
    """
    Confidential client credentials. Never serialized to the browser.
    """

    model_config = ConfigDict(frozen=True)

    client_id: str
    client_secret: SecretStr

    def basic_token(self) -> str:
        """
        Returns ``base64(client_id:client_secret)`` as used in the Basic authorization header.
        """
        pair = f"{self.client_id}:{self.client_secret.get_secret_value()}"
        return base64.b64encode(pair.encode("utf-8")).decode("ascii")

    def __repr__(self) -> str:
        return f"ClientCredentials(client_id={self.client_id!r}, client_secret=SecretStr('**********'))"

    def __str__(self) -> str:
        return self.__repr__()


class ExchangeResult(BaseModel):
    """
    The upstream token endpoint's answer, whatever it was.

    Attributes:
        status_code (int): The upstream HTTP status.
        data (Any): The parsed JSON body, or ``{"raw": <text>}`` when the body is not JSON.
    """

    model_config = ConfigDict(frozen=True)

    status_code: int
    data: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class TokenResponse(BaseModel):
    """
    Response containing the tokens.

    Unknown fields returned by the authorization server are kept. Known fields with an
    unexpected shape are dropped rather than failing the exchange.

    Attributes:
        id_token (str | None): The ID token (compact JWS), if issued.
        access_token (str | None): The access token, if issued.
        token_type (str | None): The type of the token (e.g. "Bearer").
        expires_in (int | None): The lifetime in seconds of the access token.
        scope (str | None): The granted scope.
    """

    model_config = ConfigDict(extra="allow")

    id_token: str | None = None
    access_token: str | None = None
    token_type: str | None = None
    expires_in: int | None = None
    scope: str | None = None

    @field_validator("id_token", "access_token", "token_type", "expires_in", "scope", mode="wrap")
    @classmethod
    def drop_unparseable(cls, v: Any, handler: ValidatorFunctionWrapHandler) -> Any:
        """
        Servers disagree on these fields (`scope` as a list, fractional `expires_in`).
        A value that does not fit is dropped.
        """
        try:
            return handler(v)
        except ValidationError:
            return None


class VerifiedToken(BaseModel):
    """
    A verified ID token. Only `IDTokenVerifier` produces these.

    Attributes:
        header (dict[str, Any]): The protected JOSE header.
        claims (dict[str, Any]): The full, unmodified claim set.
    """

    model_config = ConfigDict(frozen=True)

    header: dict[str, Any]
    claims: dict[str, Any]


class ExchangeBody(BaseModel):
    """Inbound body of ``POST /oauth/exchange``."""

    code: str | None = None
    state: str | None = None


class CallbackBody(BaseModel):
    """Inbound body of ``POST /oauth/callback``."""

    code: str | None = None
    redirect_uri: str | None = None
