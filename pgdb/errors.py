from typing import Optional


class PgdbError(Exception):
    """Base class for everything raised while provisioning databases."""


class BinaryNotFound(PgdbError):
    def __init__(self, binary: str):
        super().__init__("could not find `{}` binary".format(binary))
        self.binary = binary


class CreateDatabaseDirError(PgdbError):
    def __init__(self, error: OSError):
        super().__init__(
            "could not create temporary directory for database: {}".format(error)
        )
        self.error = error


class WriteTemporaryPwError(PgdbError):
    def __init__(self, path: str, error: OSError):
        super().__init__(
            "error writing temporary password to {}: {}".format(path, error)
        )
        self.path = path
        self.error = error


class RunInitdbError(PgdbError):
    def __init__(self, error: OSError):
        super().__init__("failed to run `initdb`: {}".format(error))
        self.error = error


class InitdbFailed(PgdbError):
    def __init__(self, returncode: int, stderr: str = ""):
        super().__init__(
            "`initdb` exited with status {}: {}".format(returncode, stderr.strip())
        )
        self.returncode = returncode
        self.stderr = stderr


class LaunchPostgresError(PgdbError):
    def __init__(self, error: OSError):
        super().__init__("failed to launch `postgres`: {}".format(error))
        self.error = error


class StartupTimeout(PgdbError):
    """Postgres was launched but never accepted a TCP connection in time."""

    def __init__(self, host: str, port: int, timeout: float):
        super().__init__(
            "timeout probing tcp socket {}:{} after {}s".format(host, port, timeout)
        )
        self.host = host
        self.port = port
        self.timeout = timeout


class RunPsqlError(PgdbError):
    def __init__(self, error: OSError):
        super().__init__("failed to run `psql`: {}".format(error))
        self.error = error


class PsqlFailed(PgdbError):
    def __init__(self, returncode: int, stderr: str = ""):
        super().__init__(
            "`psql` exited with status {}: {}".format(returncode, stderr.strip())
        )
        self.returncode = returncode
        self.stderr = stderr


class PortExhausted(PgdbError):
    def __init__(self, requested: int):
        super().__init__("no unclaimed port left, starting from {}".format(requested))
        self.requested = requested


class InvalidExternalUrl(PgdbError):
    """`PGDB_TESTS_URL` is set but not usable as a superuser URL."""

    reason = "invalid URL"

    def __init__(self, url: str, reason: Optional[str] = None):
        if reason is not None:
            self.reason = reason
        super().__init__("invalid PGDB_TESTS_URL {!r}: {}".format(url, self.reason))
        self.url = url


class InvalidScheme(InvalidExternalUrl):
    reason = "must use postgres:// scheme"


class MissingHost(InvalidExternalUrl):
    reason = "must include a host"


class MissingUsername(InvalidExternalUrl):
    reason = "must include a username"
