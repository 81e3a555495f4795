import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import psycopg
from psycopg.errors import DeadlockDetected, SerializationFailure

from config import get_settings

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

# errors worth retrying from scratch
TRANSIENT_ERRORS = (SerializationFailure, DeadlockDetected)


@contextmanager
def get_conn(dsn: Optional[str] = None):
    """
    simple context manager to get a Postgres connection.
    autocommit is disabled so we can manage transactions explicitly.
    """
    with psycopg.connect(dsn or get_settings().database_url) as conn:
        conn.autocommit = False
        yield conn


@contextmanager
def get_snapshot_conn(dsn: Optional[str] = None):
    """
    read-only connection whose statements all see the same snapshot.
    """
    with get_conn(dsn) as conn:
        conn.execute("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ, READ ONLY")
        yield conn


def init_schema(dsn: Optional[str] = None) -> None:
    """
    create tables/indexes if they don't exist yet (idempotent).
    """
    with get_conn(dsn) as conn:
        conn.execute(SCHEMA_PATH.read_text())
        conn.commit()
    logger.info("Database schema ensured")
