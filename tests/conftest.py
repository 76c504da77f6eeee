from pgdb.fixtures import setup_logging, pgdb_context, postgres_instance, db_instance  # noqa: F401,F403
from pgdb.utils import env

import os
import pytest
import shutil


def have_postgres():
    bindir = env("PGDB_POSTGRES_BIN")
    return all(
        env("PGDB_{}_BINARY".format(name.upper())) or shutil.which(name, path=bindir)
        for name in ("initdb", "postgres", "psql")
    )


def pytest_configure(config):
    config.addinivalue_line("markers",
                            "postgres: needs `initdb`, `postgres` and `psql` binaries")
    config.addinivalue_line("markers",
                            "external: needs PGDB_TESTS_URL pointing at a cluster with superuser credentials")


def pytest_runtest_setup(item):
    if list(item.iter_markers(name='postgres')):
        if not have_postgres():
            pytest.skip('postgres binaries not found')
        if hasattr(os, "geteuid") and os.geteuid() == 0:
            pytest.skip('initdb refuses to run as root')
    if list(item.iter_markers(name='external')) and not os.environ.get("PGDB_TESTS_URL"):
        pytest.skip('PGDB_TESTS_URL is not set')


@pytest.fixture
def fake_bin(tmp_path):
    """Write small shell scripts standing in for the postgres executables."""
    bindir = tmp_path / "bin"
    bindir.mkdir()

    def write(name, body):
        path = bindir / name
        path.write_text("#!/bin/sh\n" + body + "\n")
        path.chmod(0o755)
        return str(path)

    return write
