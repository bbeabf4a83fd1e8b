"""Pytest configuration and fixtures."""

import copy
import sys
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for backend_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from runservice.config import ReconcilerConfig  # noqa: E402

BASE_SPEC: dict[str, Any] = {
    "name": "api",
    "projectId": "demo-project",
    "location": "europe-west1",
    "container": {"image": "europe-docker.pkg.dev/demo-project/app/api:1.0"},
}


@pytest.fixture
def spec_data() -> dict[str, Any]:
    """Minimal valid spec document (camelCase, as written in YAML)."""
    return copy.deepcopy(BASE_SPEC)


@pytest.fixture
def fast_config() -> ReconcilerConfig:
    """Reconciler settings with no retry backoff."""
    return ReconcilerConfig(
        max_concurrency=4,
        operation_timeout_seconds=5,
        max_retries=3,
        retry_backoff_base_seconds=0.0,
    )
