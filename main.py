"""
Newsletter backend entry point.
"""

import uvicorn
from loguru import logger

from newsletter.app import create_app
from newsletter.log import setup_logging
from newsletter.settings import global_settings


def main() -> None:
    setup_logging(global_settings)
    logger.info("Starting newsletter backend...")

    app = create_app(global_settings)
    uvicorn.run(
        app,
        host=global_settings.host,
        port=global_settings.port,
        log_level=global_settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
