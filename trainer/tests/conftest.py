"""Pytest configuration."""

import os
import pytest


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "integration: mark test as requiring a live database (skipped in CI by default)"
    )


os.environ.setdefault(
    "DATABASE_URL", "postgresql://localhost:5432/repertoire_trainer?user=postgres&password=postgres"
)
