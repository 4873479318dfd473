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
Server-side OAuth 2.0 authorization-code exchange and ID token verification.
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .config import ConfigResolver, TokenExchangeConfig, load_config
from .exceptions import (
    ConfigurationError,
    ExchangeError,
    ExchangeErrorKind,
    KeyResolutionError,
    TokenExchangeServiceError,
    VerificationError,
)
from .handlers import CallbackHandler, ExchangeHandler
from .jwks import JWKSCache, SigningKeySet
from .models import ClientCredentials, ExchangeRequest, TokenResponse, VerifiedToken
from .token_exchanger import TokenExchanger
from .verifier import IDTokenVerifier

__all__ = [
    "CallbackHandler",
    "ClientCredentials",
    "ConfigResolver",
    "ConfigurationError",
    "ExchangeError",
    "ExchangeErrorKind",
    "ExchangeHandler",
    "ExchangeRequest",
    "IDTokenVerifier",
    "JWKSCache",
    "KeyResolutionError",
    "SigningKeySet",
    "TokenExchangeConfig",
    "TokenExchangeServiceError",
    "TokenExchanger",
    "TokenResponse",
    "VerificationError",
    "VerifiedToken",
    "load_config",
]
