"""
Ledger database connection

Connection parameters come from the DB_* environment variables (or a .env
file); explicit arguments win over the environment.
"""
import logging
import os
from typing import Optional

import psycopg2
from dotenv import load_dotenv


load_dotenv()

logger = logging.getLogger(__name__)

APPLICATION_NAME = 'budget-sync'


def get_db_connection(
    host: Optional[str] = None,
    port: Optional[int] = None,
    database: Optional[str] = None,
    user: Optional[str] = None,
    password: Optional[str] = None,
    connect_timeout: Optional[int] = None,
):
    """
    Open a psycopg2 connection to the ledger database

    Args:
        host: Database host (default: DB_HOST, else localhost)
        port: Database port (default: DB_PORT, else 5432)
        database: Database name (default: DB_NAME, else budget_sync)
        user: Database user (default: DB_USER, else budget_sync)
        password: Database password (default: DB_PASSWORD)
        connect_timeout: Seconds to wait for the server (default: DB_CONNECT_TIMEOUT, else 10)

    Raises:
        psycopg2.OperationalError: the server cannot be reached or refuses the login
    """
    params = {
        'host': host or os.getenv('DB_HOST', 'localhost'),
        'port': port or int(os.getenv('DB_PORT', '5432')),
        'dbname': database or os.getenv('DB_NAME', 'budget_sync'),
        'user': user or os.getenv('DB_USER', 'budget_sync'),
        'connect_timeout': connect_timeout or int(os.getenv('DB_CONNECT_TIMEOUT', '10')),
    }
    logger.debug("Connecting to ledger database %(dbname)s at %(host)s:%(port)s as %(user)s", params)
    return psycopg2.connect(
        password=password or os.getenv('DB_PASSWORD', 'budget_sync_local_dev'),
        application_name=APPLICATION_NAME,
        **params,
    )
