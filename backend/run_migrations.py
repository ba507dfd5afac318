#!/usr/bin/env python3
"""Apply pending SQL migrations from backend/migrations.

Can be executed as a one-off deploy job or locally.
"""

from __future__ import annotations

import logging
import sys

import psycopg

from backend.db import get_database
from backend.logging_config import configure_logging


LOGGER = logging.getLogger("vap.migrations")


def main() -> int:
    configure_logging()
    try:
        get_database()
    except (RuntimeError, psycopg.Error) as exc:
        LOGGER.error("migrations.failed", extra={"error": str(exc)})
        return 1
    LOGGER.info("migrations.applied")
    return 0


if __name__ == "__main__":
    sys.exit(main())
