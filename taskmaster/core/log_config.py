import logging
import sys
from typing import Optional

from taskmaster.core.config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging for worker and API processes."""
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
