"""Ephemeral postgres instances and the clients talking to them.

A `Postgres` owns a running server process together with a temporary
directory holding its data and password file. It is started from a
`PostgresBuilder` and torn down exactly once through `Postgres.stop()`
(or by leaving its `with` block), which stops the process before removing
the directory.

All SQL is run by shelling out to `psql`, with the password passed in
`PGPASSWORD` so that it never shows up on a command line.
"""
from dataclasses import dataclass, field, replace
from pgdb.errors import (
    CreateDatabaseDirError,
    InitdbFailed,
    LaunchPostgresError,
    PsqlFailed,
    RunInitdbError,
    RunPsqlError,
    WriteTemporaryPwError,
)
from pgdb.utils import (
    GracefulProc,
    PortAllocator,
    env,
    env_flag,
    env_float,
    escape_ident,
    escape_string,
    find_binary,
    fixture_credentials,
    generate_random_string,
    wait_for_port,
)
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote, unquote, urlparse

import logging
import os
import shutil
import signal
import subprocess
import tempfile
import threading


DEFAULT_PORT = 5432
ADMIN_DATABASE = "postgres"


def make_url(username: str, password: str, host: str, port: int, database: str = "") -> str:
    # IPv6 literals need brackets to keep their colons apart from the port.
    if ":" in host and not host.startswith("["):
        host = "[{}]".format(host)
    return "postgres://{}:{}@{}:{}/{}".format(
        quote(username, safe=""),
        quote(password, safe=""),
        host,
        port,
        quote(database, safe=""),
    )


def url_parts(url: str) -> Dict:
    """Split a `postgres://` URL into host, port, username, password and dbname.
    """
    parts = urlparse(url)
    return {
        "host": parts.hostname or "localhost",
        "port": parts.port or DEFAULT_PORT,
        "username": unquote(parts.username or ""),
        "password": unquote(parts.password or ""),
        "dbname": unquote(parts.path.lstrip("/")),
    }


def with_credentials(url: str, username: str, password: str, database: Optional[str] = None) -> str:
    p = url_parts(url)
    if database is None:
        database = p["dbname"]
    return make_url(username, password, p["host"], p["port"], database)


def psql_command(psql_binary: str, host: str, port: int, username: str,
                 password: str, database: str) -> Tuple[List[str], Dict[str, str]]:
    """Build the argv and environment for running `psql` against `database`.
    """
    cmd = [
        psql_binary,
        "-h", host,
        "-p", str(port),
        "-U", username,
        "-d", database,
    ]
    cmd_env = os.environ.copy()
    cmd_env["PGPASSWORD"] = password
    return cmd, cmd_env


def _run_psql(cmd: List[str], cmd_env: Dict[str, str]) -> str:
    logging.debug("Running '%s'", " ".join(cmd))
    try:
        res = subprocess.run(cmd, env=cmd_env, stdin=subprocess.DEVNULL,
                             stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                             text=True)
    except OSError as e:
        raise RunPsqlError(e) from e

    if res.returncode != 0:
        raise PsqlFailed(res.returncode, res.stderr)
    return res.stdout


def run_psql_command(superuser_url: str, database: str, sql: str,
                     psql_binary: Optional[str] = None) -> None:
    """Execute `sql` on the server `superuser_url` points to, using its credentials.
    """
    if psql_binary is None:
        psql_binary = shutil.which("psql") or "psql"
    p = url_parts(superuser_url)
    cmd, cmd_env = psql_command(psql_binary, p["host"], p["port"],
                                p["username"], p["password"], database)
    _run_psql(cmd + ["-c", sql], cmd_env)


def create_user_and_database(superuser_url: str, db_name: str, db_user: str,
                             db_pw: str, psql_binary: Optional[str] = None) -> None:
    run_psql_command(
        superuser_url,
        ADMIN_DATABASE,
        "CREATE ROLE {} LOGIN ENCRYPTED PASSWORD {};".format(
            escape_ident(db_user), escape_string(db_pw)
        ),
        psql_binary=psql_binary,
    )
    run_psql_command(
        superuser_url,
        ADMIN_DATABASE,
        "CREATE DATABASE {} OWNER {};".format(
            escape_ident(db_name), escape_ident(db_user)
        ),
        psql_binary=psql_binary,
    )


def create_fixture_db(superuser_url: str, psql_binary: Optional[str] = None) -> str:
    """Create a randomly named database and role, returning the URL to use them.
    """
    db_name, db_user, db_pw = fixture_credentials()
    create_user_and_database(superuser_url, db_name, db_user, db_pw, psql_binary=psql_binary)
    logging.debug("Created fixture database %s owned by %s", db_name, db_user)
    return with_credentials(superuser_url, db_user, db_pw, db_name)


@dataclass
class PostgresBuilder:
    """Configuration for a postgres instance, started with `start()`.

    Every field has a usable default; nothing is checked until `start()`:

     - `data_dir`: where `initdb` puts the cluster, defaults to a `db`
       directory inside the instance's temporary directory. A directory
       given here is not removed on teardown.
     - `host`: address probed for readiness and put in URLs.
     - `port`: listening port, allocated when unset.
     - `reuse_port`: use `port` as-is even if another instance in this
       process already claimed it.
     - `superuser`, `superuser_pw`: credentials set up by `initdb`, the
       password is random unless given.
     - `postgres_binary`, `initdb_binary`, `psql_binary`: explicit paths,
       looked up in `bindir` or on `PATH` when unset.
     - `probe_delay`, `startup_timeout`: readiness polling, in seconds.
     - `grace_period`: how long teardown waits for the server to exit
       before killing it.
     - `extra_config`: lines appended to `postgresql.conf`.
    """
    data_dir: Optional[str] = None
    host: str = "127.0.0.1"
    port: Optional[int] = None
    reuse_port: bool = False
    superuser: str = "postgres"
    superuser_pw: str = field(default_factory=generate_random_string)
    postgres_binary: Optional[str] = None
    initdb_binary: Optional[str] = None
    psql_binary: Optional[str] = None
    bindir: Optional[str] = None
    probe_delay: float = 0.1
    startup_timeout: float = 10
    grace_period: float = 5
    extra_config: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls, **overrides) -> "PostgresBuilder":
        """Build a configuration from the `PGDB_*` environment variables.
        """
        kwargs = {
            "host": env("PGDB_HOST", "127.0.0.1"),
            "reuse_port": env_flag("PGDB_REUSE_PORT"),
            "superuser": env("PGDB_SUPERUSER", "postgres"),
            "postgres_binary": env("PGDB_POSTGRES_BINARY"),
            "initdb_binary": env("PGDB_INITDB_BINARY"),
            "psql_binary": env("PGDB_PSQL_BINARY"),
            "bindir": env("PGDB_POSTGRES_BIN"),
            "probe_delay": env_float("PGDB_PROBE_DELAY", 0.1),
            "startup_timeout": env_float("PGDB_STARTUP_TIMEOUT", 10),
        }
        if env("PGDB_PORT"):
            kwargs["port"] = int(env("PGDB_PORT"))
        if env("PGDB_SUPERUSER_PW"):
            kwargs["superuser_pw"] = env("PGDB_SUPERUSER_PW")
        kwargs.update(overrides)
        return cls(**kwargs)

    def replace(self, **changes) -> "PostgresBuilder":
        return replace(self, **changes)

    def start(self, port_allocator: Optional[PortAllocator] = None) -> "Postgres":
        """Start the server, returning once it accepts TCP connections.

        If anything fails along the way, whatever was set up so far (the
        server process, the temporary directory, the claimed port) is
        released again before the error propagates.
        """
        if port_allocator is None:
            port_allocator = PortAllocator(self.host)

        port = port_allocator.allocate(self.port, self.reuse_port)
        claimed = self.port is None or not self.reuse_port
        tmp_dir = None
        proc = None
        try:
            postgres_binary = find_binary("postgres", self.postgres_binary, self.bindir)
            initdb_binary = find_binary("initdb", self.initdb_binary, self.bindir)
            psql_binary = find_binary("psql", self.psql_binary, self.bindir)

            try:
                tmp_dir = tempfile.mkdtemp(prefix="pgdb-")
            except OSError as e:
                raise CreateDatabaseDirError(e) from e
            data_dir = self.data_dir or os.path.join(tmp_dir, "db")

            passfile = os.path.join(tmp_dir, "superuser-pw")
            try:
                with open(passfile, "w") as f:
                    f.write(self.superuser_pw)
            except OSError as e:
                raise WriteTemporaryPwError(passfile, e) from e

            self._initdb(initdb_binary, data_dir, passfile)
            if self.extra_config:
                self._write_extra_config(data_dir)

            proc = GracefulProc(
                [postgres_binary, "-D", data_dir, "-p", str(port), "-k", tmp_dir],
                tmp_dir,
                grace_period=self.grace_period,
                # Fast shutdown: abort open transactions and exit promptly.
                stop_signal=signal.SIGINT,
            )
            try:
                proc.start()
            except OSError as e:
                raise LaunchPostgresError(e) from e

            wait_for_port(self.host, port, self.probe_delay, self.startup_timeout)

            superuser_url = make_url(self.superuser, self.superuser_pw, self.host, port)
            pg = Postgres(
                superuser_url=superuser_url,
                proc=proc,
                psql_binary=psql_binary,
                tmp_dir=tmp_dir,
                port_allocator=port_allocator if claimed else None,
            )
        except BaseException:
            if proc is not None:
                errlog = proc.read_errlog()
                proc.stop()
                if errlog:
                    logging.warning("postgres stderr:\n%s", errlog)
            if tmp_dir is not None:
                shutil.rmtree(tmp_dir, ignore_errors=True)
            if claimed:
                port_allocator.release(port)
            raise

        logging.info("Started postgres on %s:%d (pid %d)", self.host, port, proc.pid)
        return pg

    def _initdb(self, initdb_binary: str, data_dir: str, passfile: str) -> None:
        cmd = [
            initdb_binary,
            # No default locale (== 'C').
            "--no-locale",
            # Require a password for all users.
            "--auth=md5",
            "--encoding=UTF8",
            # Do not sync data, which is fine for tests.
            "--nosync",
            "--pgdata", data_dir,
            "--pwfile", passfile,
            "--username", self.superuser,
        ]
        logging.debug("Running '%s'", " ".join(cmd))
        try:
            res = subprocess.run(cmd, stdin=subprocess.DEVNULL,
                                 stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                                 text=True)
        except OSError as e:
            raise RunInitdbError(e) from e

        if res.returncode != 0:
            raise InitdbFailed(res.returncode, res.stderr)

    def _write_extra_config(self, data_dir: str) -> None:
        conffile = os.path.join(data_dir, "postgresql.conf")
        try:
            with open(conffile, "a") as f:
                for k, v in self.extra_config.items():
                    f.write("{} = {}\n".format(k, v))
        except OSError as e:
            raise CreateDatabaseDirError(e) from e


class Postgres(object):
    """A running postgres instance.

    Once stopped, the server process is gone and the temporary directory
    containing all of its data has been removed.
    """

    def __init__(self, superuser_url: str, proc: GracefulProc, psql_binary: str,
                 tmp_dir: str, port_allocator: Optional[PortAllocator] = None) -> None:
        self.superuser_url = superuser_url
        self.proc = proc
        self.psql_binary = psql_binary
        self.tmp_dir = tmp_dir
        self.port_allocator = port_allocator

        parts = url_parts(superuser_url)
        self.host = parts["host"]
        self.port = parts["port"]
        self.superuser = parts["username"]
        self.superuser_pw = parts["password"]

        self._lock = threading.Lock()
        self._stopped = False

    @staticmethod
    def build(**kwargs) -> PostgresBuilder:
        return PostgresBuilder(**kwargs)

    def __repr__(self):
        return "<Postgres {}:{} {}>".format(
            self.host, self.port, "stopped" if self._stopped else "running"
        )

    def __enter__(self) -> "Postgres":
        return self

    def __exit__(self, *exc) -> None:
        self.stop()

    @property
    def running(self) -> bool:
        return not self._stopped and self.proc.is_running()

    def as_superuser(self) -> "PostgresClient":
        return PostgresClient(self, self.superuser, self.superuser_pw)

    def as_user(self, username: str, password: str) -> "PostgresClient":
        return PostgresClient(self, username, password)

    def stop(self) -> None:
        """Shut the server down and remove its data. Only the first call does anything.
        """
        with self._lock:
            if self._stopped:
                return
            self._stopped = True

        logging.info("Stopping postgres on %s:%d", self.host, self.port)
        self.proc.stop()

        shutil.rmtree(self.tmp_dir, ignore_errors=True)
        if os.path.exists(self.tmp_dir):
            logging.warning("Could not remove %s", self.tmp_dir)
        if self.port_allocator is not None:
            self.port_allocator.release(self.port)


class PostgresClient(object):
    """A set of credentials bound to a running `Postgres`.

    Creating one does no I/O; every operation runs `psql` anew.
    """

    def __init__(self, instance: Postgres, username: str, password: str) -> None:
        self.instance = instance
        self.username = username
        self.password = password

    @property
    def client_url(self) -> str:
        return make_url(self.username, self.password, self.instance.host, self.instance.port)

    def url(self, database: str) -> str:
        """Returns a libpq-style connection URL for `database`."""
        return make_url(self.username, self.password, self.instance.host,
                        self.instance.port, database)

    def psql_command(self, database: str) -> Tuple[List[str], Dict[str, str]]:
        return psql_command(self.instance.psql_binary, self.instance.host,
                            self.instance.port, self.username, self.password,
                            database)

    def run_sql(self, database: str, sql: str) -> None:
        cmd, cmd_env = self.psql_command(database)
        _run_psql(cmd + ["-c", sql], cmd_env)

    def load_sql(self, database: str, filename: str) -> None:
        """Runs the SQL commands in `filename` via `psql`."""
        cmd, cmd_env = self.psql_command(database)
        _run_psql(cmd + ["-f", str(filename)], cmd_env)

    def query(self, database: str, sql: str) -> List[str]:
        """Run `sql` and return its rows, unaligned and without headers."""
        cmd, cmd_env = self.psql_command(database)
        out = _run_psql(cmd + ["-t", "-A", "-c", sql], cmd_env)
        return [line for line in out.splitlines() if line]

    def create_database(self, database: str, owner: str) -> None:
        """This typically requires superuser credentials."""
        self.run_sql(
            ADMIN_DATABASE,
            "CREATE DATABASE {} OWNER {};".format(escape_ident(database), escape_ident(owner)),
        )

    def create_user(self, username: str, password: str) -> None:
        """Creates a new role that is allowed to login.

        This typically requires superuser credentials.
        """
        self.run_sql(
            ADMIN_DATABASE,
            "CREATE ROLE {} LOGIN ENCRYPTED PASSWORD {};".format(
                escape_ident(username), escape_string(password)
            ),
        )
