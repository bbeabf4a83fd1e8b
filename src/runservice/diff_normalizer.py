"""Diff normalization rules engine for desired-vs-observed comparison.

This module decides whether an observed resource already matches its
desired payload, ignoring differences that are syntactic rather than
semantic.

DESIGN:
- Backend-assigned fields (ids, etags, timestamps, generated URIs) never
  count as drift
- Semantic equivalence: empty list, empty dict, empty string, null and a
  missing key are the same thing
- Default value awareness: the backend fills in defaults that the payload
  states explicitly
- Order independence for collections the platform treats as sets

COMMON FALSE POSITIVES HANDLED:
1. Output-only fields echoed back by the backend (etag, uid, uri, ...)
2. description: null vs missing
3. Server-side defaults (execution environment, request timeout)
4. Case differences in principals and domains
5. Volume and mount ordering
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

_MISSING = object()


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    # Field is backend-assigned and never compared
    IGNORE = "ignore"

    # Empty equivalence: [], {}, "", null, missing are equivalent
    EMPTY_EQUIVALENCE = "empty_equivalence"

    # Boolean normalization: "true", "True", True, 1 are equivalent
    BOOLEAN_NORMALIZE = "boolean_normalize"

    # Case normalization for identifiers/enums
    CASE_INSENSITIVE = "case_insensitive"

    # Array order independence
    ARRAY_UNORDERED = "array_unordered"

    # Default value equivalence
    DEFAULT_VALUE = "default_value"


@dataclass(frozen=True)
class NormalizationRule:
    """A single normalization rule.

    Attributes:
        kind: Node kind to match ("*" for all)
        path_pattern: Payload path pattern to match (supports * and **)
        normalization_type: Type of normalization to apply
        params: Additional parameters for the normalization
        reason: Human-readable explanation
    """

    kind: str
    path_pattern: str
    normalization_type: NormalizationType
    params: dict[str, Any] = field(default_factory=dict)
    reason: str = ""

    def matches(self, kind: str, path: str) -> bool:
        """Check if this rule applies to a node kind and payload path."""
        if self.kind != "*" and self.kind != kind:
            return False
        return self.path_pattern == "*" or _glob_match(path, self.path_pattern)


def _glob_match(value: str, pattern: str) -> bool:
    """Glob matching: * within one segment, ** across segments.

    A leading "**." also matches at the root, so "**.etag" matches "etag".
    """
    regex_pattern = "^"
    i = 0
    if pattern.startswith("**."):
        regex_pattern += r"(?:.*\.)?"
        i = 3
    while i < len(pattern):
        if pattern[i:i+2] == "**":
            regex_pattern += ".*"
            i += 2
        elif pattern[i] == "*":
            regex_pattern += "[^.]*"
            i += 1
        elif pattern[i] in r"\.[]{}()+^$|?":
            regex_pattern += "\\" + pattern[i]
            i += 1
        else:
            regex_pattern += pattern[i]
            i += 1
    regex_pattern += "$"

    return bool(re.match(regex_pattern, value))


# Fields the backend assigns; never part of a desired payload
BACKEND_ASSIGNED_FIELDS = (
    "id",
    "uid",
    "etag",
    "uri",
    "email",
    "unique_id",
    "create_time",
    "update_time",
    "generation",
    "observed_generation",
    "latest_ready_revision",
    "latest_created_revision",
    "conditions",
    "reconciling",
)


DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    *(
        NormalizationRule(
            kind="*",
            path_pattern=f"**.{name}",
            normalization_type=NormalizationType.IGNORE,
            reason="Backend-assigned field",
        )
        for name in BACKEND_ASSIGNED_FIELDS
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty values equal null/missing",
    ),
    # Boolean flags may round-trip as strings
    NormalizationRule(
        kind="service",
        path_pattern="template.containers.resources.*",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="CPU allocation flags",
    ),
    # Principals and domains are case-insensitive
    NormalizationRule(
        kind="*",
        path_pattern="member",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="IAM members are case-insensitive",
    ),
    NormalizationRule(
        kind="domain_mapping",
        path_pattern="domain",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Domain names are case-insensitive",
    ),
    # Server-side defaults
    NormalizationRule(
        kind="service",
        path_pattern="template.execution_environment",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": "EXECUTION_ENVIRONMENT_GEN2"},
        reason="Execution environment defaults to gen2",
    ),
    NormalizationRule(
        kind="service",
        path_pattern="template.timeout",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": "300s"},
        reason="Request timeout defaults to 300s",
    ),
    NormalizationRule(
        kind="service",
        path_pattern="ingress",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": "INGRESS_TRAFFIC_ALL"},
        reason="Ingress defaults to all traffic",
    ),
    # Array ordering for unordered collections
    NormalizationRule(
        kind="service",
        path_pattern="template.volumes",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Volumes are keyed by name",
    ),
    NormalizationRule(
        kind="service",
        path_pattern="template.containers.volume_mounts",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Mounts are keyed by path",
    ),
]


class DiffNormalizer:
    """Compares desired and observed payloads under normalization rules."""

    def __init__(
        self,
        rules: list[NormalizationRule] | None = None,
        enable_default_rules: bool = True,
    ) -> None:
        """Initialize normalizer.

        Args:
            rules: Custom normalization rules.
            enable_default_rules: Whether to include default rules.
        """
        self._rules: list[NormalizationRule] = []
        if enable_default_rules:
            self._rules.extend(DEFAULT_NORMALIZATION_RULES)
        if rules:
            self._rules.extend(rules)

    def is_ignored(self, kind: str, path: str) -> bool:
        """True if path is excluded from comparison for this kind."""
        return any(
            rule.normalization_type == NormalizationType.IGNORE and rule.matches(kind, path)
            for rule in self._rules
        )

    def normalize_value(self, value: Any, kind: str, path: str) -> Any:
        """Normalize a value based on applicable rules."""
        normalized = None if value is _MISSING else value

        for rule in self._rules:
            if rule.normalization_type != NormalizationType.IGNORE and rule.matches(kind, path):
                normalized = self._apply_normalization(normalized, rule)

        return normalized

    def _apply_normalization(self, value: Any, rule: NormalizationRule) -> Any:
        match rule.normalization_type:
            case NormalizationType.EMPTY_EQUIVALENCE:
                return self._normalize_empty(value)
            case NormalizationType.BOOLEAN_NORMALIZE:
                return self._normalize_boolean(value)
            case NormalizationType.CASE_INSENSITIVE:
                return value.lower() if isinstance(value, str) else value
            case NormalizationType.ARRAY_UNORDERED:
                return self._normalize_array_order(value)
            case NormalizationType.DEFAULT_VALUE:
                return rule.params.get("default") if value is None else value
            case _:
                return value

    def _normalize_empty(self, value: Any) -> Any:
        """[], {}, "" and null all become None for comparison."""
        if isinstance(value, str | list | dict) and len(value) == 0:
            return None
        return value

    def _normalize_boolean(self, value: Any) -> bool | Any:
        if isinstance(value, str):
            if value.lower() in ("true", "yes", "1", "on"):
                return True
            if value.lower() in ("false", "no", "0", "off"):
                return False
        return value

    def _normalize_array_order(self, value: Any) -> list | Any:
        if isinstance(value, list):
            return sorted(value, key=lambda x: json.dumps(x, sort_keys=True, default=str))
        return value

    def compare(self, desired: dict[str, Any], observed: dict[str, Any], kind: str) -> list[str]:
        """Return the payload paths where observed differs from desired.

        An empty list means the observed resource matches.
        """
        differences: list[str] = []
        self._compare(desired, observed, kind, "", differences)
        return differences

    def are_equivalent(self, desired: dict[str, Any], observed: dict[str, Any], kind: str) -> bool:
        """Check if observed state satisfies the desired payload."""
        return not self.compare(desired, observed, kind)

    def _compare(
        self,
        desired: Any,
        observed: Any,
        kind: str,
        path: str,
        differences: list[str],
    ) -> None:
        if isinstance(desired, dict) or isinstance(observed, dict):
            if desired is None:
                desired = {}
            if observed is None:
                observed = {}
            if not (isinstance(desired, dict) and isinstance(observed, dict)):
                differences.append(path or "<root>")
                return
            for key in sorted(set(desired) | set(observed), key=str):
                child = f"{path}.{key}" if path else str(key)
                if self.is_ignored(kind, child):
                    continue
                before = self.normalize_value(desired.get(key, _MISSING), kind, child)
                after = self.normalize_value(observed.get(key, _MISSING), kind, child)
                self._compare(before, after, kind, child, differences)
            return

        if isinstance(desired, list) and isinstance(observed, list):
            if len(desired) != len(observed):
                differences.append(path)
                return
            for before, after in zip(desired, observed, strict=True):
                marker = len(differences)
                self._compare(
                    self.normalize_value(before, kind, path),
                    self.normalize_value(after, kind, path),
                    kind,
                    path,
                    differences,
                )
                if len(differences) > marker:
                    # One entry per differing list is enough
                    del differences[marker + 1:]
                    return
            return

        if desired != observed:
            differences.append(path or "<root>")
