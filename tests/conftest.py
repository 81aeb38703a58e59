"""Root test configuration for taskyard tests."""

from __future__ import annotations

import os
from pathlib import Path

import pytest
from dotenv import load_dotenv

# Load test environment before any test module imports
load_dotenv(dotenv_path=Path(__file__).parent.parent / '.env.test')


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line('markers', 'unit: Unit tests (no database)')
    config.addinivalue_line(
        'markers', 'integration: Integration tests (requires database)'
    )
    config.addinivalue_line('markers', 'slow: Long-running tests')


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Skip integration tests when no test database is configured."""
    if os.environ.get('TASKYARD_TEST_DATABASE_URL') or os.environ.get('DB_PASSWORD'):
        return
    skip_db = pytest.mark.skip(
        reason='set TASKYARD_TEST_DATABASE_URL or DB_PASSWORD to run integration tests'
    )
    for item in items:
        if 'integration' in item.keywords:
            item.add_marker(skip_db)
