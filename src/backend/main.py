"""
Main entry point for the ARGOS backend server.
"""

import logging

import uvicorn

from src.backend.core.config import get_config
from src.backend.utils.logging import setup_logging


def main() -> None:
    """Run the ARGOS backend server."""
    config = get_config()

    setup_logging(
        log_level=config.logging.LOG_LEVEL,
        log_format=config.logging.LOG_FORMAT,
        log_file_path=config.logging.LOG_FILE_PATH,
        log_file_max_bytes=config.logging.LOG_FILE_MAX_BYTES,
        log_file_backup_count=config.logging.LOG_FILE_BACKUP_COUNT,
        enable_console=config.logging.LOG_ENABLE_CONSOLE,
        enable_file=config.logging.LOG_ENABLE_FILE,
        enable_journal=config.logging.LOG_ENABLE_JOURNAL,
    )
    logger = logging.getLogger(__name__)

    logger.info(
        f"Starting {config.app.APP_NAME} server on {config.app.APP_HOST}:{config.app.APP_PORT}"
    )

    uvicorn.run(
        "src.backend.core.app:create_app",
        factory=True,
        host=config.app.APP_HOST,
        port=config.app.APP_PORT,
        reload=config.development.DEV_HOT_RELOAD,
        log_level=config.logging.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
