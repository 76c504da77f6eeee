"""Fixture databases on a shared postgres instance.

Starting postgres is costly, so all fixture databases handed out in one
process live on the same instance, each with its own randomly named
database and owning role. The instance is reference counted: it is shut
down as soon as the last handle on it is released, and a fresh one is
started by the next request.

If `PGDB_TESTS_URL` is set, no local instance is started at all. The URL
must carry superuser credentials for an externally managed cluster; the
fixture databases and roles are created there and dropped again when their
handle is released. Since tests may be interrupted before cleaning up, such
a cluster can accumulate leftover `fixture_db_*` databases over time, so
this mode is mostly intended for throwaway CI clusters.
"""
from pgdb.db import (
    Postgres,
    PostgresBuilder,
    create_fixture_db,
    run_psql_command,
    url_parts,
    ADMIN_DATABASE,
)
from pgdb.errors import (
    InvalidExternalUrl,
    InvalidScheme,
    MissingHost,
    MissingUsername,
    PgdbError,
)
from pgdb.utils import PGDB_DEBUG, PortAllocator, env, escape_ident
from typing import Callable, Optional, Set
from urllib.parse import urlparse

import atexit
import logging
import psycopg2  # type: ignore
import pytest  # type: ignore
import shutil
import sys
import threading


EXTERNAL_URL_VAR = "PGDB_TESTS_URL"


def redact(url: str) -> str:
    parts = urlparse(url)
    if not parts.password:
        return url
    netloc = parts.netloc.replace(":{}@".format(parts.password), ":***@", 1)
    return parts._replace(netloc=netloc).geturl()


def parse_external_test_url(value: Optional[str] = None) -> Optional[str]:
    """Return the external superuser URL from `PGDB_TESTS_URL`, if any.

    Returns `None` if it isn't set, raises a subclass of
    `InvalidExternalUrl` if it is set but unusable.
    """
    if value is None:
        value = env(EXTERNAL_URL_VAR)
    if not value:
        return None

    shown = redact(value)
    parts = urlparse(value)
    if parts.scheme not in ("postgres", "postgresql"):
        raise InvalidScheme(shown)
    try:
        parts.port
    except ValueError as e:
        raise InvalidExternalUrl(shown, str(e)) from e
    if not parts.hostname:
        raise MissingHost(shown)
    if not parts.username:
        raise MissingUsername(shown)
    return value


class SharedPostgres(object):
    """One reference to the registry's shared instance.

    `release()` gives the reference back; only the first call counts.
    """

    def __init__(self, registry: "SharedInstanceRegistry", instance: Postgres) -> None:
        self.registry = registry
        self.instance = instance
        self._lock = threading.Lock()
        self.released = False

    def __enter__(self) -> Postgres:
        return self.instance

    def __exit__(self, *exc) -> None:
        self.release()

    def release(self) -> None:
        with self._lock:
            if self.released:
                return
            self.released = True
        self.registry._release(self.instance)


class SharedInstanceRegistry(object):
    """Lazily starts one postgres instance and shares it between callers.

    The lock is held for the whole check-then-start sequence, so
    concurrent callers wait for the one starting the instance instead of
    starting their own. Teardown happens outside the lock, once the last
    reference is gone; a later `acquire()` starts a new instance.
    """

    def __init__(self, launcher: Optional[Callable[[], Postgres]] = None,
                 port_allocator: Optional[PortAllocator] = None) -> None:
        self.port_allocator = port_allocator or PortAllocator()
        if launcher is None:
            def launcher():
                return PostgresBuilder.from_env().start(self.port_allocator)
        self.launcher = launcher
        self.lock = threading.Lock()
        self.instance: Optional[Postgres] = None
        self.refcount = 0
        self.launches = 0

    def acquire(self) -> SharedPostgres:
        with self.lock:
            if self.instance is None:
                logging.info("No shared postgres instance running, starting one")
                self.instance = self.launcher()
                self.launches += 1
            self.refcount += 1
            return SharedPostgres(self, self.instance)

    def current(self) -> Optional[Postgres]:
        with self.lock:
            return self.instance

    def _release(self, instance: Postgres) -> None:
        with self.lock:
            if instance is not self.instance:
                # Already torn down by `shutdown()`.
                return
            self.refcount -= 1
            if self.refcount > 0:
                return
            self.instance = None

        logging.info("Last reference to shared postgres released")
        instance.stop()

    def shutdown(self) -> None:
        """Stop the shared instance regardless of outstanding references."""
        with self.lock:
            instance, self.instance = self.instance, None
            refcount, self.refcount = self.refcount, 0
        if instance is not None:
            if refcount:
                logging.warning("Stopping shared postgres with %d references left", refcount)
            instance.stop()


class DbInstance(object):
    """Ownership of one fixture database.

    A local handle keeps the shared instance it lives on running; an
    external one remembers the superuser URL needed to drop its database
    and role again. Either way `release()` cleans up exactly once, and
    never raises.
    """

    LOCAL = "local"
    EXTERNAL = "external"

    def __init__(self, kind: str, url: str, shared: Optional[SharedPostgres] = None,
                 superuser_url: Optional[str] = None) -> None:
        self.kind = kind
        self.url = url
        self.shared = shared
        self.superuser_url = superuser_url
        self.on_release: Optional[Callable[["DbInstance"], None]] = None
        self._lock = threading.Lock()
        self.released = False

        parts = url_parts(url)
        self.host = parts["host"]
        self.port = parts["port"]
        self.username = parts["username"]
        self.password = parts["password"]
        self.dbname = parts["dbname"]

    @classmethod
    def local(cls, shared: SharedPostgres, url: str) -> "DbInstance":
        return cls(cls.LOCAL, url, shared=shared)

    @classmethod
    def external(cls, url: str, superuser_url: str) -> "DbInstance":
        return cls(cls.EXTERNAL, url, superuser_url=superuser_url)

    @property
    def is_local(self) -> bool:
        return self.kind == self.LOCAL

    @property
    def instance(self) -> Optional[Postgres]:
        return self.shared.instance if self.shared else None

    def as_str(self) -> str:
        return self.url

    def __str__(self):
        return self.url

    def __repr__(self):
        return "<DbInstance {} {} on {}:{}>".format(self.kind, self.dbname, self.host, self.port)

    def __enter__(self) -> "DbInstance":
        return self

    def __exit__(self, *exc) -> None:
        self.release()

    def connect(self):
        """Open a new `psycopg2` connection to the fixture database."""
        return psycopg2.connect(self.url)

    def release(self) -> None:
        with self._lock:
            if self.released:
                return
            self.released = True

        try:
            if self.kind == self.LOCAL:
                # The database and role go away together with the instance.
                self.shared.release()
            else:
                self._drop_external()
        except Exception:
            logging.exception("Error releasing %r", self)
        finally:
            if self.on_release is not None:
                self.on_release(self)

    def _drop_external(self) -> None:
        psql_binary = shutil.which("psql") or "psql"
        # Database first, the role still owns it until it's gone.
        statements = [
            "DROP DATABASE IF EXISTS {};".format(escape_ident(self.dbname)),
            "DROP ROLE IF EXISTS {};".format(escape_ident(self.username)),
        ]
        for sql in statements:
            try:
                run_psql_command(self.superuser_url, ADMIN_DATABASE, sql,
                                 psql_binary=psql_binary)
            except PgdbError as e:
                logging.warning("Cleanup of %s failed: %s", self.dbname, e)


class PgdbContext(object):
    """Process-scoped state: the port claims, the shared instance and the
    fixture handles that haven't been released yet.
    """

    def __init__(self, external_url: Optional[str] = None,
                 launcher: Optional[Callable[[], Postgres]] = None) -> None:
        self.external_url = external_url
        self.port_allocator = PortAllocator()
        self.registry = SharedInstanceRegistry(launcher, self.port_allocator)
        self.lock = threading.Lock()
        self.outstanding: Set[DbInstance] = set()

    def _external_url(self) -> Optional[str]:
        if self.external_url is not None:
            return parse_external_test_url(self.external_url)
        return parse_external_test_url()

    def db_fixture(self) -> DbInstance:
        """Create a fresh database and role, returning the handle owning them.
        """
        external_url = self._external_url()
        if external_url is not None:
            url = create_fixture_db(external_url)
            db = DbInstance.external(url, external_url)
        else:
            shared = self.registry.acquire()
            try:
                pg = shared.instance
                url = create_fixture_db(pg.superuser_url, psql_binary=pg.psql_binary)
            except Exception:
                shared.release()
                raise
            db = DbInstance.local(shared, url)

        with self.lock:
            self.outstanding.add(db)
        db.on_release = self._forget
        return db

    def _forget(self, db: DbInstance) -> None:
        with self.lock:
            self.outstanding.discard(db)

    def shutdown(self) -> None:
        with self.lock:
            leftover = list(self.outstanding)
        for db in leftover:
            logging.warning("%r was never released, releasing it now", db)
            db.release()
        self.registry.shutdown()


_default_context: Optional[PgdbContext] = None
_default_context_lock = threading.Lock()


def get_default_context() -> PgdbContext:
    global _default_context
    with _default_context_lock:
        if _default_context is None:
            _default_context = PgdbContext()
            atexit.register(_default_context.shutdown)
        return _default_context


def db_fixture(context: Optional[PgdbContext] = None) -> DbInstance:
    """Return a fresh fixture database, see `PgdbContext.db_fixture`.

    Without an explicit context, the process-wide default one is used.
    The caller must `release()` the handle (or use it as a context
    manager); anything left over is released at interpreter exit.
    """
    if context is None:
        context = get_default_context()
    return context.db_fixture()


@pytest.fixture(autouse=True)
def setup_logging():
    """Enable logging before a test, and remove all handlers afterwards.

    pytest swaps out sys.stdout and sys.stderr to capture output, and
    closes them without waiting for handlers pointing at them, so we
    remove those handlers again once the test is done.
    """
    if PGDB_DEBUG:
        logging.basicConfig(level=logging.DEBUG, stream=sys.stdout)

    yield

    loggers = [logging.getLogger()] + list(logging.Logger.manager.loggerDict.values())
    for logger in loggers:
        handlers = getattr(logger, 'handlers', [])
        for handler in handlers:
            logger.removeHandler(handler)


@pytest.fixture(scope="session")
def pgdb_context():
    context = PgdbContext()
    yield context
    context.shutdown()


@pytest.fixture(scope="session")
def postgres_instance(pgdb_context):
    """A postgres instance dedicated to the test session."""
    pg = PostgresBuilder.from_env().start(pgdb_context.port_allocator)
    yield pg
    pg.stop()


@pytest.fixture
def db_instance(pgdb_context):
    """A fresh fixture database for a single test."""
    db = pgdb_context.db_fixture()
    yield db
    db.release()
