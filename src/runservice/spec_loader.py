"""Spec file loading with validation.

SECURITY: File reads enforce a size limit before parsing. Input
validation is performed at the boundary: schema errors and cross-field
violations both surface as ValidationError, before any node is built.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import pydantic
import yaml

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import ResourceSpec
from .preconditions import ValidationError, Violation, ViolationCode, ensure_valid

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when a spec file cannot be read or is not a YAML mapping."""

    pass


def _format_loc(loc: tuple[Any, ...]) -> str:
    """Render a pydantic error location as "container.env[0].name"."""
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else str(part)
    return path or "<root>"


def parse_spec(data: Any, source: str | None = None) -> ResourceSpec:
    """Validate raw spec data into a ResourceSpec.

    Accepts both a flat mapping and a Kubernetes-style wrapper with
    apiVersion/kind/metadata/spec.

    Raises:
        SpecLoadError: If data is not a mapping.
        ValidationError: If the data violates the schema or any cross-field
            invariant. Every violation is reported.
    """
    if not isinstance(data, dict):
        raise SpecLoadError(f"Spec must be a mapping: {source or '<input>'}")

    if "apiVersion" in data and "spec" in data:
        spec_data = data.get("spec")
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source or '<input>'}")
    else:
        spec_data = data

    try:
        spec = ResourceSpec.model_validate(spec_data)
    except pydantic.ValidationError as e:
        violations = [
            Violation(ViolationCode.SCHEMA, _format_loc(error["loc"]), error["msg"])
            for error in e.errors()
        ]
        raise ValidationError(violations, source=source) from e

    return ensure_valid(spec, source=source)


def load_spec(spec_path: Path) -> ResourceSpec:
    """Load and validate a service spec from YAML.

    Args:
        spec_path: Path to the spec file.

    Returns:
        Validated, fully defaulted spec.

    Raises:
        SpecLoadError: If the file cannot be read or parsed.
        ValidationError: If the spec is invalid.
    """
    if not spec_path.exists():
        raise SpecLoadError(f"Spec file not found: {spec_path}")

    # SECURITY: Check file size before reading
    try:
        file_size = spec_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat spec file {spec_path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Spec file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {spec_path}"
        )

    try:
        content = spec_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read spec file {spec_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    spec = parse_spec(raw_data, source=str(spec_path))
    logger.info("Loaded spec for service '%s' from %s", spec.name, spec_path)
    return spec
