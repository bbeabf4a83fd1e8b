"""Integration tests for full passes through files, state store and backend loading.

These tests use the in-memory backend from backend_mock to run the whole
flow (spec file -> graph -> refresh -> plan -> apply -> state file) without
any cloud connectivity.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
import yaml
from backend_mock import InMemoryBackend

from runservice import main as main_module
from runservice.backend import BackendLoadError, load_backend
from runservice.builder import iam_binding_key
from runservice.config import ReconcilerConfig
from runservice.reconciler import Action, Reconciler
from runservice.spec_loader import load_spec
from runservice.state import StateStore

# Shared across load_backend calls within one test via a module attribute
SHARED_BACKEND = InMemoryBackend()


def write_spec(path: Path, data: dict[str, Any]) -> Path:
    document = {
        "apiVersion": "runservice/v1",
        "kind": "RunService",
        "metadata": {"name": data["name"]},
        "spec": data,
    }
    path.write_text(yaml.safe_dump(document))
    return path


class TestStatefulPasses:
    """Tests for passes that persist state between runs."""

    @pytest.mark.asyncio
    async def test_state_file_round_trip(
        self, tmp_path: Path, spec_data: dict[str, Any], fast_config: ReconcilerConfig
    ) -> None:
        """Test a second pass from the state file is all no-op."""
        spec_data["iamGrants"] = {"invoker": ["userA", "userB"]}
        spec_data["secretVolumes"] = [{"mountPath": "/etc/db", "secret": "db"}]
        spec = load_spec(write_spec(tmp_path / "service.yaml", spec_data))
        store = StateStore(tmp_path / "state.yaml")
        backend = InMemoryBackend()
        reconciler = Reconciler(backend, fast_config)

        first = await reconciler.reconcile(spec, store)
        second = await reconciler.reconcile(spec, store)

        assert first.success is True
        assert store.path.exists()
        assert second.plan.has_changes is False
        assert set(store.load()) == set(backend.resources)

    @pytest.mark.asyncio
    async def test_removed_grant_deleted_from_state(
        self, tmp_path: Path, spec_data: dict[str, Any], fast_config: ReconcilerConfig
    ) -> None:
        """Test a dropped principal is deleted and forgotten by the store."""
        store = StateStore(tmp_path / "state.yaml")
        backend = InMemoryBackend()
        reconciler = Reconciler(backend, fast_config)
        spec_path = tmp_path / "service.yaml"

        spec_data["iamGrants"] = {"invoker": ["userA", "userB"]}
        await reconciler.reconcile(load_spec(write_spec(spec_path, spec_data)), store)

        spec_data["iamGrants"] = {"invoker": ["userA"]}
        spec = load_spec(write_spec(spec_path, spec_data))
        result = await reconciler.reconcile(spec, store)

        user_b = iam_binding_key(spec, "invoker", "userB")
        assert result.plan.keys_for(Action.DELETE) == [user_b]
        assert user_b not in store.load()

    @pytest.mark.asyncio
    async def test_resource_deleted_out_of_band_is_recreated(
        self, tmp_path: Path, spec_data: dict[str, Any], fast_config: ReconcilerConfig
    ) -> None:
        """Test a stored resource missing from the backend is created again."""
        spec = load_spec(write_spec(tmp_path / "service.yaml", spec_data))
        store = StateStore(tmp_path / "state.yaml")
        backend = InMemoryBackend()
        reconciler = Reconciler(backend, fast_config)
        await reconciler.reconcile(spec, store)

        service = next(key for key in backend.resources if key.startswith("service/"))
        del backend.resources[service]
        result = await reconciler.reconcile(spec, store)

        assert result.plan.keys_for(Action.CREATE) == [service]
        assert result.success is True


class TestLoadBackend:
    """Tests for backend references."""

    def test_load_class(self) -> None:
        """Test a class reference is instantiated."""
        assert isinstance(load_backend("backend_mock:InMemoryBackend"), InMemoryBackend)

    def test_load_instance(self) -> None:
        """Test an instance reference is used as-is."""
        assert load_backend("test_integration:SHARED_BACKEND") is SHARED_BACKEND

    def test_missing_module(self) -> None:
        """Test an unknown module raises BackendLoadError."""
        with pytest.raises(BackendLoadError, match="Cannot import"):
            load_backend("no_such_module_here:Backend")

    def test_missing_attribute(self) -> None:
        """Test an unknown attribute raises BackendLoadError."""
        with pytest.raises(BackendLoadError, match="has no attribute"):
            load_backend("backend_mock:Nope")

    def test_not_a_backend(self) -> None:
        """Test a reference to something else raises BackendLoadError."""
        with pytest.raises(BackendLoadError, match="not a Backend"):
            load_backend("builtins:dict")


class TestMain:
    """Tests for the one-shot entry point."""

    @pytest.mark.asyncio
    async def test_main_success(self, tmp_path: Path, spec_data: dict[str, Any]) -> None:
        """Test a full run from environment settings exits 0."""
        env = {
            "SPEC_FILE": str(write_spec(tmp_path / "service.yaml", spec_data)),
            "STATE_FILE": str(tmp_path / "state.yaml"),
            "BACKEND": "test_integration:SHARED_BACKEND",
            "RETRY_BACKOFF_BASE": "0",
        }

        with patch.dict(os.environ, env, clear=True), patch.object(main_module, "setup_logging"):
            exit_code = await main_module.main()

        assert exit_code == 0
        assert (tmp_path / "state.yaml").exists()

    @pytest.mark.asyncio
    async def test_main_invalid_spec(self, tmp_path: Path, spec_data: dict[str, Any]) -> None:
        """Test an invalid spec exits 1 without touching state."""
        spec_data["scaling"] = {"minInstanceCount": 5, "maxInstanceCount": 2}
        env = {
            "SPEC_FILE": str(write_spec(tmp_path / "service.yaml", spec_data)),
            "STATE_FILE": str(tmp_path / "state.yaml"),
            "BACKEND": "backend_mock:InMemoryBackend",
        }

        with patch.dict(os.environ, env, clear=True), patch.object(main_module, "setup_logging"):
            exit_code = await main_module.main()

        assert exit_code == 1
        assert not (tmp_path / "state.yaml").exists()

    @pytest.mark.asyncio
    async def test_main_missing_settings(self) -> None:
        """Test missing SPEC_FILE/BACKEND exits 1."""
        with patch.dict(os.environ, {}, clear=True), patch.object(main_module, "setup_logging"):
            assert await main_module.main() == 1
