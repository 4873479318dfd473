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
Custom exceptions for the coreason-token-exchange package.
"""

from enum import StrEnum
from typing import Any


class TokenExchangeServiceError(Exception):
    """Base exception for all coreason-token-exchange errors."""


class ConfigurationError(TokenExchangeServiceError):
    """
    Raised when required deployment configuration is absent or invalid.

    Only the names of the offending keys are carried, never their values.
    """

    def __init__(self, message: str, missing_keys: list[str] | None = None) -> None:
        super().__init__(message)
        self.missing_keys = missing_keys or []


class ExchangeErrorKind(StrEnum):
    REJECTED = "rejected"
    TIMEOUT = "timeout"
    NETWORK_FAILURE = "network_failure"
    MISSING_ID_TOKEN = "missing_id_token"


class ExchangeError(TokenExchangeServiceError):
    """
    Raised when the token endpoint rejected the exchange or could not be reached.

    Attributes:
        kind (ExchangeErrorKind): What went wrong.
        status_code (int | None): The upstream HTTP status, when a response was received.
        data (Any): The parsed (or ``{"raw": ...}``) upstream body, when one was received.
    """

    def __init__(
        self,
        message: str,
        kind: ExchangeErrorKind,
        status_code: int | None = None,
        data: Any = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.data = data


class KeyResolutionError(TokenExchangeServiceError):
    """Raised when the JWKS document cannot be fetched or parsed."""


class VerificationError(TokenExchangeServiceError):
    """
    Raised when an ID token fails verification.
    `check` names the failed check so operators can tell the failures apart.
    """

    check = "token"

    def __init__(self, message: str, check: str | None = None) -> None:
        super().__init__(message)
        if check is not None:
            self.check = check


class SignatureVerificationError(VerificationError):
    """Raised when the token's signature cannot be verified."""

    check = "signature"


class InvalidIssuerError(VerificationError):
    """Raised when the token's issuer does not match the configured issuer."""

    check = "issuer"


class InvalidAudienceError(VerificationError):
    """Raised when the token's audience does not contain the client id."""

    check = "audience"


class TokenExpiredError(VerificationError):
    """Raised when the provided token has expired."""

    check = "expiry"


class TokenNotYetValidError(VerificationError):
    """Raised when `nbf` or `iat` places the token in the future."""

    check = "not_before"


class UnsupportedAlgorithmError(VerificationError):
    """Raised when the token header names an algorithm that is not allowed."""

    check = "algorithm"


class MalformedTokenError(VerificationError):
    """Raised when the token cannot be decoded at all."""

    check = "malformed"


class OversizedResponseError(TokenExchangeServiceError):
    """Raised when an HTTP response is too large."""
