"""Tests for spec file loading."""

from pathlib import Path
from typing import Any

import pytest
import yaml

from runservice.config import MAX_SPEC_FILE_SIZE_BYTES
from runservice.preconditions import ValidationError, ViolationCode
from runservice.spec_loader import SpecLoadError, load_spec, parse_spec


class TestParseSpec:
    """Tests for parse_spec."""

    def test_flat_document(self, spec_data: dict[str, Any]) -> None:
        """Test a flat mapping parses."""
        assert parse_spec(spec_data).name == "api"

    def test_wrapped_document(self, spec_data: dict[str, Any]) -> None:
        """Test a Kubernetes-style wrapper is unwrapped."""
        document = {
            "apiVersion": "runservice/v1",
            "kind": "RunService",
            "metadata": {"name": "api"},
            "spec": spec_data,
        }
        assert parse_spec(document).project_id == "demo-project"

    def test_schema_errors_become_violations(self, spec_data: dict[str, Any]) -> None:
        """Test schema errors carry code and alias-based field paths."""
        del spec_data["projectId"]
        spec_data["container"]["env"] = [{"value": "no-name"}]

        with pytest.raises(ValidationError) as exc_info:
            parse_spec(spec_data, source="service.yaml")

        fields = {v.field for v in exc_info.value.violations}
        assert exc_info.value.codes == {ViolationCode.SCHEMA}
        assert "projectId" in fields
        assert "container.env[0].name" in fields

    def test_cross_field_violations(self, spec_data: dict[str, Any]) -> None:
        """Test parse_spec also runs cross-field checks."""
        spec_data["scaling"] = {"minInstanceCount": 5, "maxInstanceCount": 2}

        with pytest.raises(ValidationError) as exc_info:
            parse_spec(spec_data)

        assert exc_info.value.codes == {ViolationCode.SCALING_BOUNDS}

    def test_not_a_mapping(self) -> None:
        """Test non-mapping input is a load error."""
        with pytest.raises(SpecLoadError, match="must be a mapping"):
            parse_spec(["not", "a", "mapping"])


class TestLoadSpec:
    """Tests for load_spec."""

    def test_load(self, tmp_path: Path, spec_data: dict[str, Any]) -> None:
        """Test loading a YAML file."""
        path = tmp_path / "service.yaml"
        path.write_text(yaml.safe_dump(spec_data))

        assert load_spec(path).location == "europe-west1"

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test a missing file raises SpecLoadError."""
        with pytest.raises(SpecLoadError, match="not found"):
            load_spec(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test invalid YAML raises SpecLoadError."""
        path = tmp_path / "service.yaml"
        path.write_text("name: [api\n")

        with pytest.raises(SpecLoadError, match="Invalid YAML"):
            load_spec(path)

    def test_oversized_file(self, tmp_path: Path) -> None:
        """Test files over the size limit are rejected."""
        path = tmp_path / "service.yaml"
        path.write_text("#" * (MAX_SPEC_FILE_SIZE_BYTES + 1))

        with pytest.raises(SpecLoadError, match="exceeds maximum size"):
            load_spec(path)
