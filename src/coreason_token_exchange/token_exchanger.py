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
TokenExchanger component for the OAuth 2.0 Authorization Code grant (RFC 6749, section 4.1.3).
"""

from typing import Any

import httpx
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from coreason_token_exchange.exceptions import ExchangeError, ExchangeErrorKind
from coreason_token_exchange.models import ClientCredentials, ExchangeRequest, ExchangeResult, TokenResponse
from coreason_token_exchange.transport import SecurityError, loads_strict, read_limited_body
from coreason_token_exchange.utils.logger import logger

tracer = trace.get_tracer(__name__)


def parse_body(text: str) -> Any:
    """
    Parses a response body as JSON, keeping non-JSON bodies verbatim under ``raw``.
    """
    try:
        return loads_strict(text)
    except ValueError:
        return {"raw": text}


class TokenExchanger:
    """
    Redeems authorization codes at the token endpoint as a confidential client.

    Exactly one POST is sent per call. Codes are single-use, so nothing is retried.

    Attributes:
        client (httpx.AsyncClient): The outbound HTTP client.
        token_endpoint (str): The authorization server's token endpoint.
        credentials (ClientCredentials): The client id and secret, sent as HTTP Basic.
        timeout (float): Request timeout in seconds.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        token_endpoint: str,
        credentials: ClientCredentials,
        timeout: float,
        max_response_bytes: int = 1_000_000,
    ) -> None:
        self.client = client
        self.token_endpoint = token_endpoint
        self.credentials = credentials
        self.timeout = timeout
        self.max_response_bytes = max_response_bytes

    def _build_form(self, request: ExchangeRequest) -> dict[str, str]:
        return {
            "grant_type": "authorization_code",
            "client_id": self.credentials.client_id,
            "code": request.code,
            "redirect_uri": request.redirect_uri,
        }

    async def exchange_code_raw(self, request: ExchangeRequest) -> ExchangeResult:
        """
        Sends the exchange and returns whatever the token endpoint answered.

        Emits an OpenTelemetry span `token_exchange`.

        Args:
            request: The code and redirect URI to redeem.

        Returns:
            ExchangeResult: The upstream status and parsed (or raw) body, success or not.

        Raises:
            ExchangeError: Of kind `timeout` or `network_failure` when no response was received.
            OversizedResponseError: If the response body exceeds the size limit.
        """
        headers = {
            "Authorization": f"Basic {self.credentials.basic_token()}",
            "Accept": "application/json",
        }

        with tracer.start_as_current_span("token_exchange") as span:
            span.set_attribute("oauth.token_endpoint", self.token_endpoint)
            try:
                async with self.client.stream(
                    "POST",
                    self.token_endpoint,
                    data=self._build_form(request),
                    headers=headers,
                    timeout=self.timeout,
                ) as response:
                    body = await read_limited_body(response, self.max_response_bytes)
                    status_code = response.status_code
            except httpx.TimeoutException as e:
                logger.warning(
                    f"Token exchange with {self.token_endpoint} timed out after {self.timeout}s. "
                    "The authorization code may have been consumed upstream."
                )
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, "timeout"))
                raise ExchangeError(
                    f"Token endpoint did not answer within {self.timeout}s", ExchangeErrorKind.TIMEOUT
                ) from e
            except (httpx.HTTPError, SecurityError) as e:
                logger.error(f"Token exchange with {self.token_endpoint} failed: {type(e).__name__}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, "network_failure"))
                raise ExchangeError(
                    f"Token endpoint could not be reached: {type(e).__name__}", ExchangeErrorKind.NETWORK_FAILURE
                ) from e

            span.set_attribute("http.response.status_code", status_code)
            data = parse_body(body.decode("utf-8", errors="replace"))
            result = ExchangeResult(status_code=status_code, data=data)

            if result.ok:
                logger.info(f"Token endpoint answered HTTP {status_code}")
                span.set_status(Status(StatusCode.OK))
            else:
                upstream_error = data.get("error") if isinstance(data, dict) else None
                logger.warning(f"Token endpoint rejected the exchange: HTTP {status_code} ({upstream_error})")
                span.set_status(Status(StatusCode.ERROR, f"HTTP {status_code}"))

            return result

    async def exchange_code(self, request: ExchangeRequest, require_id_token: bool = True) -> TokenResponse:
        """
        Redeems the code and insists on a successful token response carrying an ID token.

        Args:
            request: The code and redirect URI to redeem.
            require_id_token: Fail when the response carries no `id_token`.

        Returns:
            TokenResponse: The issued tokens.

        Raises:
            ExchangeError: `rejected` for upstream non-2xx, `missing_id_token` when no ID token was issued,
                or `timeout` / `network_failure` as raised by `exchange_code_raw`.
        """
        result = await self.exchange_code_raw(request)
        if not result.ok:
            raise ExchangeError(
                f"Token endpoint rejected the exchange with HTTP {result.status_code}",
                ExchangeErrorKind.REJECTED,
                status_code=result.status_code,
                data=result.data,
            )

        data = result.data if isinstance(result.data, dict) else {}
        id_token = data.get("id_token")
        if require_id_token and not (isinstance(id_token, str) and id_token):
            logger.warning("Token endpoint answered without an id_token")
            raise ExchangeError(
                "Token response does not contain an id_token",
                ExchangeErrorKind.MISSING_ID_TOKEN,
                status_code=result.status_code,
                data=result.data,
            )

        return TokenResponse.model_validate(data)
