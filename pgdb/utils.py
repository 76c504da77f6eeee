from pgdb.errors import BinaryNotFound, PortExhausted, StartupTimeout
from typing import Dict, List, Optional, Set, Tuple

import ephemeral_port_reserve  # type: ignore
import logging
import os
import secrets
import shutil
import signal
import socket
import subprocess
import threading
import time


def env(name, default=None):
    """Access to environment variables, falling back to a default value.
    """
    if name in os.environ:
        return os.environ[name]
    return default


def env_flag(name, default="0"):
    return env(name, default) == "1"


def env_float(name, default):
    return float(env(name, default))


PGDB_DEBUG = env_flag("PGDB_DEBUG")

MIN_UNPRIVILEGED_PORT = 1024
MAX_PORT = 65535


class PortAllocator(object):
    """Hands out TCP ports for instances running in this process.

    Claiming a port is pure bookkeeping, not an OS-level reservation: a
    port returned from here can still be taken by some other process
    before postgres binds it, in which case the launch fails.
    """

    def __init__(self, host: str = "127.0.0.1") -> None:
        self.host = host
        self.lock = threading.Lock()
        self.claimed: Set[int] = set()

    def allocate(self, requested: Optional[int] = None, reuse_allowed: bool = False) -> int:
        if requested is None:
            return self._allocate_ephemeral()
        if reuse_allowed:
            return requested

        with self.lock:
            port = requested
            for _ in range(MAX_PORT):
                if port not in self.claimed:
                    self.claimed.add(port)
                    if port != requested:
                        logging.debug("Port %d already claimed, using %d", requested, port)
                    return port
                port = self._next_port(port, requested)
        raise PortExhausted(requested)

    def _allocate_ephemeral(self) -> int:
        # Postgres won't take `0` as its port, so let the OS pick one for us
        # and hope nobody grabs it before the server binds it.
        with self.lock:
            while True:
                port = ephemeral_port_reserve.reserve(self.host)
                if port not in self.claimed:
                    break
            self.claimed.add(port)
        logging.debug("Reserved unused port %d", port)
        return port

    @staticmethod
    def _next_port(port: int, requested: int) -> int:
        port = port + 1 if port < MAX_PORT else 1
        if port < MIN_UNPRIVILEGED_PORT and requested >= MIN_UNPRIVILEGED_PORT:
            port = MIN_UNPRIVILEGED_PORT
        return port

    def release(self, port: int) -> None:
        with self.lock:
            self.claimed.discard(port)

    def is_claimed(self, port: int) -> bool:
        with self.lock:
            return port in self.claimed


def generate_random_string() -> str:
    """Generates a random hex string 32 characters long."""
    return secrets.token_bytes(16).hex()


def fixture_credentials() -> Tuple[str, str, str]:
    """Return a fresh `(dbname, username, password)` triple."""
    random_id = generate_random_string()
    return (
        "fixture_db_{}".format(random_id),
        "fixture_user_{}".format(random_id),
        "fixture_pass_{}".format(random_id),
    )


def quote(quote_char: str, unescaped: str) -> str:
    """Wrap `unescaped` in `quote_char`, doubling any embedded quote char.
    """
    doubled = unescaped.replace(quote_char, quote_char * 2)
    return "{q}{s}{q}".format(q=quote_char, s=doubled)


def escape_ident(unescaped: str) -> str:
    return quote('"', unescaped)


def escape_string(unescaped: str) -> str:
    return quote("'", unescaped)


def unescape(quoted: str) -> str:
    """Inverse of `quote`, for either quote character.

    Raises `ValueError` if `quoted` is not a single well-formed quoted
    token.
    """
    if len(quoted) < 2 or quoted[0] not in "\"'" or quoted[-1] != quoted[0]:
        raise ValueError("not a quoted token: {!r}".format(quoted))

    q = quoted[0]
    body = quoted[1:-1]
    out = []
    i = 0
    while i < len(body):
        c = body[i]
        if c == q:
            if i + 1 >= len(body) or body[i + 1] != q:
                raise ValueError("stray quote in {!r}".format(quoted))
            i += 1
        out.append(c)
        i += 1
    return "".join(out)


def find_binary(name: str, configured: Optional[str] = None, bindir: Optional[str] = None) -> str:
    """Locate one of the postgres executables.

    An explicitly configured path always wins, and is not checked here:
    if it's wrong we'll find out when running it.
    """
    if configured:
        return str(configured)

    path = shutil.which(name, path=bindir) if bindir else shutil.which(name)
    if path is None:
        raise BinaryNotFound(name)
    logging.debug("Found `%s` at %s", name, path)
    return path


def wait_for_port(host: str, port: int, probe_delay: float, timeout: float) -> None:
    """Block until `host:port` accepts a TCP connection.

    This is the only retry loop we have, and the only way out of it other
    than success is the timeout.
    """
    start_time = time.time()
    while True:
        try:
            with socket.create_connection((host, port), timeout=max(probe_delay, 0.1)):
                logging.debug("Port %s:%d is accepting connections", host, port)
                return
        except OSError:
            if time.time() - start_time >= timeout:
                raise StartupTimeout(host, port, timeout)
            time.sleep(probe_delay)


class GracefulProc(object):
    """A process that is asked nicely to stop before being killed.

    stdout and stderr are redirected into `log` and `errlog` inside
    `outputDir`. Stopping sends `stop_signal`, gives the process
    `grace_period` seconds to exit and then kills it. Stopping more than
    once is a no-op, and it never raises.
    """

    def __init__(self, cmd_line: List[str], outputDir: str,
                 grace_period: float = 5, stop_signal: int = signal.SIGTERM,
                 env: Optional[Dict[str, str]] = None) -> None:
        self.cmd_line = [str(c) for c in cmd_line]
        self.env = env if env is not None else os.environ.copy()
        self.proc: Optional[subprocess.Popen] = None
        self.outputDir = outputDir
        self.grace_period = grace_period
        self.stop_signal = stop_signal
        self.stdout_filename = os.path.join(outputDir, "log")
        self.stderr_filename = os.path.join(outputDir, "errlog")
        self.rc: Optional[int] = None
        self._stop_lock = threading.Lock()
        self._stopped = False

    def start(self) -> None:
        """Spawn the process. `OSError` propagates if it can't be launched."""
        logging.debug("Starting '%s'", " ".join(self.cmd_line))
        with open(self.stdout_filename, "wt") as stdout, \
                open(self.stderr_filename, "wt") as stderr:
            self.proc = subprocess.Popen(self.cmd_line,
                                         stdin=subprocess.DEVNULL,
                                         stdout=stdout,
                                         stderr=stderr,
                                         env=self.env)

    @property
    def pid(self) -> Optional[int]:
        return self.proc.pid if self.proc else None

    def is_running(self) -> bool:
        return self.proc is not None and self.proc.poll() is None

    def stop(self) -> Optional[int]:
        with self._stop_lock:
            if self._stopped:
                return self.rc
            self._stopped = True

        if self.proc is None:
            return None

        try:
            if self.proc.poll() is None:
                self.proc.send_signal(self.stop_signal)
                try:
                    self.proc.wait(self.grace_period)
                except subprocess.TimeoutExpired:
                    logging.warning("Process %d did not exit within %ss, killing it",
                                    self.proc.pid, self.grace_period)
                    self.proc.kill()
                    self.proc.wait()
        except OSError as e:
            logging.warning("Error stopping process %d: %s", self.proc.pid, e)

        self.rc = self.proc.returncode
        logging.debug("Process %d exited with %s", self.proc.pid, self.rc)
        return self.rc

    def read_errlog(self) -> str:
        try:
            with open(self.stderr_filename, "rt") as f:
                return f.read()
        except OSError:
            return ""
