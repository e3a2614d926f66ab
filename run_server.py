#!/usr/bin/env python3
"""Run the Naar Storefront Backend API server"""

import sys

import uvicorn

from storefront.config import config
from storefront.utils.logger import setup_logging, get_logger


def main():
    setup_logging(debug=config.logging.level.upper() == "DEBUG", log_file=config.logging.file)
    logger = get_logger(__name__)

    if not config.validate():
        logger.error("Invalid configuration, refusing to start")
        sys.exit(1)

    logger.debug(f"Configuration: {config.to_dict()}")
    logger.info(f"Starting API server on {config.server.host}:{config.server.port}")
    uvicorn.run(
        "storefront.api.server:create_app",
        factory=True,
        host=config.server.host,
        port=config.server.port,
        log_level="info",
        reload=False
    )


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        print(f"Server error: {e}", file=sys.stderr)
        sys.exit(1)
