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
Configuration for the coreason-token-exchange package.
"""

from typing import Any

from pydantic import Field, SecretStr, ValidationError, field_validator, model_validator
from pydantic_core import PydanticCustomError
from pydantic_settings import BaseSettings, SettingsConfigDict

from coreason_token_exchange.exceptions import ConfigurationError
from coreason_token_exchange.models import ClientCredentials
from coreason_token_exchange.utils.logger import logger

ENV_PREFIX = "COREASON_OAUTH_"

REQUIRED_KEYS = ("issuer", "jwks_url", "client_id", "client_secret", "redirect_uri")

ASYMMETRIC_ALGORITHMS = frozenset(
    {
        "RS256",
        "RS384",
        "RS512",
        "PS256",
        "PS384",
        "PS512",
        "ES256",
        "ES384",
        "ES512",
        "ES256K",
        "EdDSA",
    }
)


class TokenExchangeConfig(BaseSettings):
    """
    Configuration settings for coreason-token-exchange.

    Attributes:
        issuer (str): The authorization server's issuer URL. Must equal the token's `iss` exactly.
        jwks_url (str): The URL of the authorization server's JWKS document.
        client_id (str): The confidential client's id. Also the expected `aud`.
        client_secret (SecretStr): The confidential client's secret.
        redirect_uri (str): The redirect URI registered for this client.
        token_endpoint (str | None): The token endpoint. Defaults to {issuer}/oauth2/token.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        case_sensitive=False,
    )

    issuer: str
    jwks_url: str
    client_id: str
    client_secret: SecretStr
    redirect_uri: str
    token_endpoint: str | None = None

    http_timeout: float = Field(default=10.0, gt=0, description="Timeout in seconds for all outbound calls.")
    allowed_algorithms: list[str] = Field(default_factory=lambda: ["RS256"])
    clock_skew_leeway: int = Field(default=0, ge=0)
    jwks_refresh_cooldown: float = Field(default=0.0, ge=0)
    max_response_bytes: int = Field(default=1_000_000, gt=0)
    pii_salt: SecretStr = SecretStr("coreason-unsafe-default-salt")
    unsafe_local_dev: bool = False

    host: str = "127.0.0.1"
    port: int = 8000

    @field_validator("issuer", "jwks_url", "client_id", "redirect_uri", "token_endpoint")
    @classmethod
    def reject_blank(cls, v: str | None) -> str | None:
        """
        Strips surrounding whitespace and rejects blank values.
        """
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise PydanticCustomError("empty_value", "Value must not be empty")
        return v

    @field_validator("client_secret")
    @classmethod
    def reject_blank_secret(cls, v: SecretStr) -> SecretStr:
        if not v.get_secret_value().strip():
            raise PydanticCustomError("empty_value", "Value must not be empty")
        return v

    @field_validator("allowed_algorithms")
    @classmethod
    def asymmetric_only(cls, v: list[str]) -> list[str]:
        """
        Only asymmetric signature algorithms are accepted. "none" and HMAC are always rejected.
        """
        if not v:
            raise ValueError("At least one signing algorithm must be allowed.")
        rejected = [alg for alg in v if alg not in ASYMMETRIC_ALGORITHMS]
        if rejected:
            raise ValueError(f"Unsupported signing algorithm(s): {', '.join(rejected)}")
        return v

    @model_validator(mode="after")
    def set_default_token_endpoint(self) -> "TokenExchangeConfig":
        if self.token_endpoint is None:
            self.token_endpoint = f"{self.issuer.rstrip('/')}/oauth2/token"
        return self

    @model_validator(mode="after")
    def validate_https(self) -> "TokenExchangeConfig":
        """
        Ensures outbound URLs use HTTPS, unless strictly opted out for local dev.
        """
        if self.unsafe_local_dev:
            return self
        for name in ("issuer", "jwks_url", "token_endpoint"):
            value = getattr(self, name)
            if value and not value.startswith("https://"):
                raise ValueError(
                    f"HTTPS is required for '{name}'. Set 'unsafe_local_dev=True' only for local testing."
                )
        return self

    @property
    def credentials(self) -> ClientCredentials:
        return ClientCredentials(client_id=self.client_id, client_secret=self.client_secret)


def _env_name(key: str) -> str:
    return f"{ENV_PREFIX}{key.upper()}"


def load_config(**overrides: Any) -> TokenExchangeConfig:
    """
    Loads the configuration from the environment, failing fast on absent values.

    Args:
        **overrides: Explicit values that take precedence over the environment.

    Returns:
        TokenExchangeConfig: The validated configuration.

    Raises:
        ConfigurationError: Naming every missing or empty required key, or every invalid key.
    """
    try:
        return TokenExchangeConfig(**overrides)
    except ValidationError as e:
        missing: list[str] = []
        invalid: list[str] = []
        for error in e.errors():
            key = ".".join(str(part) for part in error["loc"]) or "config"
            if error["type"] in ("missing", "empty_value") and key in REQUIRED_KEYS:
                missing.append(_env_name(key))
            else:
                # Input values are never echoed back
                invalid.append(f"{key}: {error['msg']}")

        if missing:
            msg = f"Missing required configuration: {', '.join(missing)}"
        else:
            msg = f"Invalid configuration: {'; '.join(invalid)}"
        logger.error(msg)
        raise ConfigurationError(msg, missing_keys=missing) from None


class ConfigResolver:
    """
    Resolves the configuration once, on first use.

    A failed resolution is not cached; the next call tries again.
    """

    def __init__(self, config: TokenExchangeConfig | None = None) -> None:
        self._config = config

    def resolve(self) -> TokenExchangeConfig:
        if self._config is None:
            self._config = load_config()
            logger.info(f"Loaded OAuth configuration for client {self._config.client_id}")
        return self._config
