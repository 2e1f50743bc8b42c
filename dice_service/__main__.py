"""
Process entry point: ``python -m dice_service`` or ``dice-service``.

Exit status is 0 after an interrupt-driven shutdown and 1 when startup,
serving or shutdown fails.
"""
import asyncio
import logging
import sys

from .config import get_settings
from .observability.logging_config import setup_logging
from .server import run_service

logger = logging.getLogger("dice_service")


def main() -> int:
    try:
        settings = get_settings()
    except Exception as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error(f"Invalid configuration: {e}")
        return 1

    setup_logging(settings.log_level, settings.service_name, settings.log_format)

    try:
        asyncio.run(run_service(settings))
    except Exception as e:
        logger.error(f"Error: {e}", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
