"""Tests for diff normalization rules engine."""

from __future__ import annotations

from runservice.diff_normalizer import (
    DiffNormalizer,
    NormalizationRule,
    NormalizationType,
)


class TestNormalizationRule:
    """Tests for NormalizationRule matching."""

    def test_matches_kind(self) -> None:
        """Test exact and wildcard kind matching."""
        rule = NormalizationRule(
            kind="service",
            path_pattern="labels",
            normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        )
        wildcard = NormalizationRule(
            kind="*",
            path_pattern="labels",
            normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        )

        assert rule.matches("service", "labels") is True
        assert rule.matches("iam_binding", "labels") is False
        assert wildcard.matches("iam_binding", "labels") is True

    def test_double_star_matches_root_and_nested(self) -> None:
        """Test a leading ** matches at the root and at any depth."""
        rule = NormalizationRule(
            kind="*",
            path_pattern="**.etag",
            normalization_type=NormalizationType.IGNORE,
        )

        assert rule.matches("service", "etag") is True
        assert rule.matches("service", "template.etag") is True
        assert rule.matches("service", "etags") is False

    def test_single_star_stays_in_segment(self) -> None:
        """Test * does not cross a path separator."""
        rule = NormalizationRule(
            kind="*",
            path_pattern="template.*",
            normalization_type=NormalizationType.IGNORE,
        )

        assert rule.matches("service", "template.timeout") is True
        assert rule.matches("service", "template.scaling.min_instance_count") is False


class TestCompare:
    """Tests for DiffNormalizer.compare."""

    def test_backend_assigned_fields_ignored(self) -> None:
        """Test ids, etags and revisions never count as drift."""
        normalizer = DiffNormalizer()
        desired = {"name": "api", "template": {"timeout": "300s"}}
        observed = {
            "name": "api",
            "id": "projects/p/locations/l/services/api",
            "etag": "abc",
            "uri": "https://api.a.run.app",
            "latest_ready_revision": "api-00001",
            "template": {"timeout": "300s"},
        }

        assert normalizer.compare(desired, observed, "service") == []

    def test_empty_equals_missing(self) -> None:
        """Test null, empty containers and missing keys are equivalent."""
        normalizer = DiffNormalizer()
        desired = {"description": None, "labels": {}, "command": []}
        observed = {"description": ""}

        assert normalizer.are_equivalent(desired, observed, "service") is True

    def test_changed_value_reported(self) -> None:
        """Test a real change reports its path."""
        normalizer = DiffNormalizer()
        desired = {"template": {"containers": [{"image": "app:2"}]}}
        observed = {"template": {"containers": [{"image": "app:1"}]}}

        assert normalizer.compare(desired, observed, "service") == ["template.containers.image"]

    def test_list_length_change(self) -> None:
        """Test a list with a different length is one difference."""
        normalizer = DiffNormalizer()
        desired = {"template": {"containers": [{"env": [{"name": "A"}, {"name": "B"}]}]}}
        observed = {"template": {"containers": [{"env": [{"name": "A"}]}]}}

        assert normalizer.compare(desired, observed, "service") == ["template.containers.env"]

    def test_server_default_matches_missing(self) -> None:
        """Test the backend default counts as equal to an unset field."""
        normalizer = DiffNormalizer()
        desired = {"template": {"execution_environment": "EXECUTION_ENVIRONMENT_GEN2"}}
        observed: dict = {"template": {}}

        assert normalizer.compare(desired, observed, "service") == []

    def test_member_case_insensitive(self) -> None:
        """Test principals differing only in case match."""
        normalizer = DiffNormalizer()

        assert normalizer.are_equivalent(
            {"role": "roles/run.invoker", "member": "user:Alice@Example.com"},
            {"role": "roles/run.invoker", "member": "user:alice@example.com"},
            "iam_binding",
        )

    def test_volume_order_ignored(self) -> None:
        """Test volumes are compared as a set."""
        normalizer = DiffNormalizer()
        desired = {"template": {"volumes": [{"name": "a"}, {"name": "b"}]}}
        observed = {"template": {"volumes": [{"name": "b"}, {"name": "a"}]}}

        assert normalizer.compare(desired, observed, "service") == []

    def test_boolean_strings(self) -> None:
        """Test CPU flags round-tripped as strings match booleans."""
        normalizer = DiffNormalizer()
        desired = {"template": {"containers": [{"resources": {"cpu_idle": True}}]}}
        observed = {"template": {"containers": [{"resources": {"cpu_idle": "true"}}]}}

        assert normalizer.compare(desired, observed, "service") == []

    def test_custom_ignore_rule(self) -> None:
        """Test custom rules extend the defaults."""
        normalizer = DiffNormalizer(
            rules=[
                NormalizationRule(
                    kind="service",
                    path_pattern="labels.managed-by",
                    normalization_type=NormalizationType.IGNORE,
                    reason="Set by the deploy pipeline",
                )
            ]
        )
        desired = {"labels": {"team": "billing"}}
        observed = {"labels": {"team": "billing", "managed-by": "pipeline"}}

        assert normalizer.compare(desired, observed, "service") == []

    def test_without_default_rules(self) -> None:
        """Test disabling defaults compares backend-assigned fields too."""
        normalizer = DiffNormalizer(enable_default_rules=False)

        assert normalizer.compare({"name": "api"}, {"name": "api", "id": "x"}, "service") == ["id"]
