# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_token_exchange

from collections.abc import Iterable
from typing import Any

REDACTED = "<REDACTED>"


def redact_secrets(data: Any, secrets: Iterable[str]) -> Any:
    """
    Returns a copy of `data` with every occurrence of each secret replaced.

    Walks dicts, lists and tuples. Keys are scrubbed as well as values.

    Args:
        data: A JSON-like structure.
        secrets: Strings that must never leave the process.

    Returns:
        Any: The scrubbed copy.
    """
    needles = [s for s in secrets if s]
    if not needles:
        return data
    return _redact(data, needles)


def _redact(value: Any, needles: list[str]) -> Any:
    if isinstance(value, str):
        for needle in needles:
            if needle in value:
                value = value.replace(needle, REDACTED)
        return value
    if isinstance(value, dict):
        return {_redact(k, needles): _redact(v, needles) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_redact(item, needles) for item in value]
    return value
