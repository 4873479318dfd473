# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_token_exchange

import sys

import uvicorn

from coreason_token_exchange.app import create_app
from coreason_token_exchange.config import load_config
from coreason_token_exchange.exceptions import ConfigurationError


def main() -> None:
    """
    Runs the service with uvicorn. Refuses to start without a complete configuration.
    """
    try:
        config = load_config()
    except ConfigurationError:
        # Already logged with the missing keys
        sys.exit(1)

    # log_config=None keeps uvicorn on standard logging, which is routed into loguru
    uvicorn.run(create_app(config), host=config.host, port=config.port, log_config=None)


if __name__ == "__main__":
    main()
