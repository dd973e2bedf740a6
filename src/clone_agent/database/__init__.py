"""Database pool, migrations and the Postgres buffer store."""

from clone_agent.database.init import init_database, run_migrations
from clone_agent.database.pool import close_pool, get_connection, get_pool

__all__ = [
    "init_database",
    "run_migrations",
    "close_pool",
    "get_connection",
    "get_pool",
]
