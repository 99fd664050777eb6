from contextlib import contextmanager
from typing import Optional

import psycopg

from config import get_settings


@contextmanager
def get_conn(dsn: Optional[str] = None):
    """
    simple context manager to get a Postgres connection.
    autocommit is disabled so we can manage transactions explicitly.
    the DSN comes from REFERRAL_DATABASE_DSN unless one is passed in.
    """
    with psycopg.connect(dsn or get_settings().database_dsn) as conn:
        conn.autocommit = False
        yield conn
