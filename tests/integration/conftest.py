from __future__ import annotations

import os

import pytest

from cua_orchestrator.storage.postgres import PostgresStorage


@pytest.fixture
def postgres_storage() -> PostgresStorage:
    if os.getenv("RUN_POSTGRES_INTEGRATION_TESTS") != "1":
        pytest.skip(
            "Set RUN_POSTGRES_INTEGRATION_TESTS=1 and ORCHESTRATOR_DATABASE_URL "
            "to run integration tests against PostgreSQL."
        )
    database_url = os.getenv("ORCHESTRATOR_DATABASE_URL")
    if not database_url:
        pytest.skip("ORCHESTRATOR_DATABASE_URL is required for integration tests.")

    storage = PostgresStorage(database_url)
    storage.migrate()
    return storage
