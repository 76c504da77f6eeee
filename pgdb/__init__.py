from .db import Postgres, PostgresBuilder, PostgresClient, create_user_and_database, run_psql_command
from .errors import PgdbError
from .fixtures import DbInstance, PgdbContext, SharedInstanceRegistry, db_fixture, parse_external_test_url
from .utils import PortAllocator, escape_ident, escape_string

__version__ = "0.1.0"

__all__ = [
    "Postgres",
    "PostgresBuilder",
    "PostgresClient",
    "PgdbError",
    "DbInstance",
    "PgdbContext",
    "SharedInstanceRegistry",
    "PortAllocator",
    "__version__",
    "create_user_and_database",
    "db_fixture",
    "escape_ident",
    "escape_string",
    "parse_external_test_url",
    "run_psql_command",
]
