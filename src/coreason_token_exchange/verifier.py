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
IDTokenVerifier component for validating ID token signatures and claims.
"""

import hashlib
import hmac
import json
import time
from typing import Any, cast

from authlib.common.encoding import urlsafe_b64decode
from authlib.jose import JsonWebToken
from authlib.jose.errors import (
    BadSignatureError,
    DecodeError,
    ExpiredTokenError,
    InvalidClaimError,
    JoseError,
    MissingClaimError,
)
from authlib.jose.errors import InvalidTokenError as JoseInvalidTokenError
from authlib.jose.errors import UnsupportedAlgorithmError as JoseUnsupportedAlgorithmError
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import SecretStr

from coreason_token_exchange.exceptions import (
    InvalidAudienceError,
    InvalidIssuerError,
    MalformedTokenError,
    SignatureVerificationError,
    TokenExpiredError,
    TokenNotYetValidError,
    UnsupportedAlgorithmError,
    VerificationError,
)
from coreason_token_exchange.jwks import JWKSCache
from coreason_token_exchange.models import VerifiedToken
from coreason_token_exchange.utils.logger import logger

tracer = trace.get_tracer(__name__)

KEY_TYPE_BY_ALG_PREFIX = {"RS": "RSA", "PS": "RSA", "ES": "EC", "Ed": "OKP"}


def read_unverified_header(token: str) -> dict[str, Any]:
    """
    Decodes the JOSE header of a compact JWS without verifying anything.

    Raises:
        MalformedTokenError: If the token is not three dot-separated segments with a JSON object header.
    """
    parts = token.split(".")
    if len(parts) != 3:
        raise MalformedTokenError("Token is not a compact JWS")
    try:
        header = json.loads(urlsafe_b64decode(parts[0].encode("ascii")))
    except ValueError as e:
        raise MalformedTokenError("Token header is not valid base64url JSON") from e
    if not isinstance(header, dict):
        raise MalformedTokenError("Token header is not a JSON object")
    return header


def _claim_error(claim: str | None, message: str) -> VerificationError:
    if claim == "iss":
        return InvalidIssuerError(message)
    if claim == "aud":
        return InvalidAudienceError(message)
    if claim == "exp":
        return TokenExpiredError(message)
    if claim == "nbf":
        return TokenNotYetValidError(message)
    if claim == "iat":
        return TokenNotYetValidError(message, check="issued_at")
    return VerificationError(message, check="claims")


def _claim_name(error: JoseError) -> str | None:
    name = getattr(error, "claim_name", None)
    if name:
        return str(name)
    description = str(error)
    for claim in ("iss", "aud", "exp", "nbf", "iat"):
        if f'"{claim}"' in description or f"'{claim}'" in description:
            return claim
    return None


class IDTokenVerifier:
    """
    Verifies ID tokens against the authorization server's published keys.

    Attributes:
        key_cache (JWKSCache): The shared key cache.
        jwks_url (str): Where the signing keys are published.
        issuer (str): The expected `iss`, compared exactly.
        audience (str): The client id that `aud` must contain.
        allowed_algorithms (list[str]): Accepted asymmetric signing algorithms.
        leeway (int): Acceptable clock skew in seconds.
    """

    def __init__(
        self,
        key_cache: JWKSCache,
        jwks_url: str,
        issuer: str,
        audience: str,
        allowed_algorithms: list[str],
        leeway: int = 0,
        pii_salt: SecretStr | None = None,
    ) -> None:
        self.key_cache = key_cache
        self.jwks_url = jwks_url
        self.issuer = issuer
        self.audience = audience
        self.allowed_algorithms = [alg for alg in allowed_algorithms if alg.lower() != "none"]
        self.leeway = leeway
        self.pii_salt = pii_salt or SecretStr("coreason-unsafe-default-salt")
        # A dedicated instance rejects every algorithm not listed
        self.jwt = JsonWebToken(self.allowed_algorithms)

    def _anonymize(self, value: str) -> str:
        return hmac.new(
            self.pii_salt.get_secret_value().encode("utf-8"),
            value.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def _claims_options(self) -> dict[str, Any]:
        return {
            "iss": {"essential": True, "value": self.issuer},
            "aud": {"essential": True, "value": self.audience},
            "exp": {"essential": True},
            "nbf": {"essential": False},
        }

    def _check_key_type(self, alg: str, key: Any) -> None:
        expected_kty = KEY_TYPE_BY_ALG_PREFIX.get(alg[:2])
        kty = getattr(key, "kty", None)
        if expected_kty != kty:
            raise UnsupportedAlgorithmError(f"Algorithm {alg} does not match key type {kty!r}")

    async def verify(self, token: str) -> VerifiedToken:
        """
        Verifies the token's signature and standard claims.

        Emits an OpenTelemetry span `verify_id_token`.

        Args:
            token: The compact-serialized ID token.

        Returns:
            VerifiedToken: The protected header and the full, unmodified claim set.

        Raises:
            MalformedTokenError: If the token cannot be decoded.
            UnsupportedAlgorithmError: If `alg` is absent, not allowed, or inconsistent with the key.
            SignatureVerificationError: If no published key matches or the signature is invalid.
            InvalidIssuerError: If `iss` differs from the configured issuer.
            InvalidAudienceError: If `aud` does not contain the client id.
            TokenExpiredError: If `exp` is absent or in the past.
            TokenNotYetValidError: If `nbf` or `iat` is in the future.
            KeyResolutionError: If the key set cannot be fetched.
        """
        with tracer.start_as_current_span("verify_id_token") as span:
            try:
                verified = await self._verify(token.strip())
            except VerificationError as e:
                logger.warning(f"ID token verification failed ({e.check}): {e}")
                span.record_exception(e)
                span.set_attribute("verification.check", e.check)
                span.set_status(Status(StatusCode.ERROR, e.check))
                raise

            user_hash = self._anonymize(str(verified.claims.get("sub", "unknown")))
            logger.info(f"ID token verified for subject {user_hash}")
            span.set_attribute("enduser.id", user_hash)
            span.set_status(Status(StatusCode.OK))
            return verified

    async def _verify(self, token: str) -> VerifiedToken:
        header = read_unverified_header(token)

        alg = header.get("alg")
        if not isinstance(alg, str) or alg not in self.allowed_algorithms:
            raise UnsupportedAlgorithmError(f"Signing algorithm {alg!r} is not allowed")

        kid = header.get("kid")
        if kid is not None and not isinstance(kid, str):
            raise MalformedTokenError("Token header kid is not a string")
        key = await self.key_cache.get_key(self.jwks_url, kid)
        if key is None:
            raise SignatureVerificationError(f"No published signing key matches kid {kid!r}")
        self._check_key_type(alg, key)

        now = int(time.time())
        try:
            jwt_any = cast("Any", self.jwt)
            claims = jwt_any.decode(token, key, claims_options=self._claims_options())
            claims.validate(now=now, leeway=self.leeway)
        except BadSignatureError as e:
            raise SignatureVerificationError(f"Invalid signature: {e}") from e
        except JoseUnsupportedAlgorithmError as e:
            raise UnsupportedAlgorithmError(f"Unsupported algorithm: {e}") from e
        except DecodeError as e:
            raise MalformedTokenError(f"Token could not be decoded: {e}") from e
        except ExpiredTokenError as e:
            raise TokenExpiredError(f"Token has expired: {e}") from e
        except (MissingClaimError, InvalidClaimError) as e:
            raise _claim_error(_claim_name(e), f"Claim check failed: {e}") from e
        except JoseInvalidTokenError as e:
            check = "issued_at" if "issued in the future" in str(e) else "not_before"
            raise TokenNotYetValidError(f"Token is not valid yet: {e}", check=check) from e
        except JoseError as e:
            raise VerificationError(f"Token validation failed: {e}", check="claims") from e
        except ValueError as e:
            # Raised for undecodable payloads
            raise MalformedTokenError(f"Token could not be decoded: {e}") from e

        iat = claims.get("iat")
        if isinstance(iat, (int, float)) and iat > now + self.leeway:
            raise TokenNotYetValidError("Token was issued in the future", check="issued_at")

        return VerifiedToken(header=dict(claims.header), claims=dict(claims))
