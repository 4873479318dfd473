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
Outbound HTTP helpers shared by the token exchange and the JWKS fetch.
"""

import ipaddress
import json
import socket
from typing import Any

import anyio.to_thread
import httpx

from coreason_token_exchange.exceptions import OversizedResponseError, TokenExchangeServiceError
from coreason_token_exchange.utils.logger import logger


class SecurityError(TokenExchangeServiceError):
    """Raised when an outbound request targets an address that is not publicly routable."""


IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


def is_public_address(address: IPAddress) -> bool:
    return address.is_global and not address.is_multicast


async def resolve_public_address(hostname: str) -> str:
    """
    Resolves `hostname` once and returns the first publicly routable address.

    Raises:
        SecurityError: If resolution fails or no resolved address is publicly routable.
    """
    try:
        literal: IPAddress | None = ipaddress.ip_address(hostname)
    except ValueError:
        literal = None

    if literal is not None:
        if not is_public_address(literal):
            logger.warning(f"Blocked outbound request to {hostname}")
            raise SecurityError(f"Access to {hostname} is blocked")
        return hostname

    try:
        addr_infos = await anyio.to_thread.run_sync(socket.getaddrinfo, hostname, None, 0, socket.SOCK_STREAM)
    except socket.gaierror as e:
        logger.error(f"DNS resolution failed for {hostname}: {e}")
        raise SecurityError(f"DNS resolution failed for {hostname}") from e

    for *_, sockaddr in addr_infos:
        try:
            candidate = ipaddress.ip_address(sockaddr[0])
        except ValueError:
            continue
        if is_public_address(candidate):
            return str(candidate)

    logger.warning(f"Blocked outbound request to {hostname}: no public address")
    raise SecurityError(f"No valid public IP found for {hostname}")


class SafeHTTPTransport(httpx.AsyncHTTPTransport):
    """
    Connects the token and JWKS calls only to publicly routable addresses.

    The connection is pinned to the address that was checked, so a second DNS answer cannot
    redirect it. TLS still verifies the original name through SNI.
    """

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        hostname = request.url.host
        address = await resolve_public_address(hostname)

        if address != hostname:
            request.extensions["sni_hostname"] = hostname
            if "Host" not in request.headers:
                request.headers["Host"] = request.url.netloc.decode("ascii")
            request.url = request.url.copy_with(host=address)

        return await super().handle_async_request(request)


def build_client(timeout: float, unsafe_local_dev: bool = False) -> httpx.AsyncClient:
    """
    Builds the shared outbound client.

    Args:
        timeout: Default timeout in seconds for every request.
        unsafe_local_dev: Use a plain transport so localhost authorization servers are reachable.

    Returns:
        httpx.AsyncClient: The client. The caller owns it and must close it.
    """
    transport = httpx.AsyncHTTPTransport() if unsafe_local_dev else SafeHTTPTransport()
    return httpx.AsyncClient(transport=transport, timeout=timeout)


async def read_limited_body(response: httpx.Response, max_bytes: int) -> bytes:
    """
    Reads a streamed response body, refusing to buffer more than `max_bytes`.

    Args:
        response: A response obtained from ``client.stream(...)``.
        max_bytes: The largest acceptable body size.

    Returns:
        bytes: The body.

    Raises:
        OversizedResponseError: If the declared or actual size exceeds the limit.
    """
    content_length = response.headers.get("Content-Length")
    if content_length:
        try:
            declared = int(content_length)
        except ValueError:
            declared = 0
        if declared > max_bytes:
            raise OversizedResponseError(f"Response too large ({declared} bytes)")

    content = bytearray()
    async for chunk in response.aiter_bytes():
        content.extend(chunk)
        if len(content) > max_bytes:
            raise OversizedResponseError("Response too large")
    return bytes(content)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"{name} is not valid JSON")


def loads_strict(text: str | bytes) -> Any:
    """
    Parses RFC 8259 JSON. Unlike ``json.loads``, `NaN` and `Infinity` are rejected.

    Raises:
        ValueError: If the text is not JSON, including integers beyond the interpreter's digit limit.
    """
    return json.loads(text, parse_constant=_reject_constant)
