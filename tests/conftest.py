import sys
from pathlib import Path

# Ensure the project's `src/` directory is on sys.path so test modules
# can import `common`, `reading_intervals`, etc. without installing the
# package first.
root_dir = Path(__file__).resolve().parents[1]
src_dir = root_dir / "src"
if src_dir.exists() and str(src_dir) not in sys.path:
    sys.path.insert(0, str(src_dir))

# -----------------------------------------------------------------------------
# Integration-test helpers (Postgres Testcontainer)
# -----------------------------------------------------------------------------

import os

import pytest


@pytest.fixture(scope="session")
def pg_container():
    """Spin up a throwaway Postgres container for tests that need a real DB."""

    try:
        from testcontainers.postgres import PostgresContainer
    except ImportError:
        pytest.skip("testcontainers not installed")

    image = os.getenv("POSTGRES_IMAGE", "postgres:16-alpine")
    container = PostgresContainer(image, driver="asyncpg")
    try:
        container.start()
    except Exception as exc:  # Docker missing or not running
        pytest.skip(f"Postgres container unavailable: {exc}")
    try:
        yield container
    finally:
        container.stop()
