"""Tests for deterministic name derivation."""

import pytest

from runservice.naming import (
    HASH_SUFFIX_LENGTH,
    SERVICE_ACCOUNT_ID_RULE,
    VOLUME_NAME_RULE,
    NameDerivationError,
    NameRule,
    content_hash,
    derive_identifier,
    normalize,
    service_account_email,
    service_account_id,
    volume_name,
)


class TestNormalize:
    """Tests for character normalization."""

    def test_lowercases_and_collapses(self) -> None:
        """Test invalid runs collapse to one separator."""
        assert normalize("My__Service..API") == "my-service-api"

    def test_strips_edge_separators(self) -> None:
        """Test leading and trailing separators are removed."""
        assert normalize("/etc/secrets/") == "etc-secrets"


class TestDeriveIdentifier:
    """Tests for derive_identifier."""

    def test_short_name_unchanged(self) -> None:
        """Test a name within bounds is only normalized."""
        assert derive_identifier("billing-api-sa", SERVICE_ACCOUNT_ID_RULE) == "billing-api-sa"

    def test_long_name_truncated_with_hash(self) -> None:
        """Test truncation appends a hash of the original input."""
        base = "a-very-long-service-name-that-exceeds-limits-sa"
        derived = derive_identifier(base, SERVICE_ACCOUNT_ID_RULE)

        assert len(derived) <= SERVICE_ACCOUNT_ID_RULE.max_length
        assert derived.endswith("-" + content_hash(base))
        assert derived.startswith("a-very-long-service")

    def test_shared_prefix_yields_distinct_names(self) -> None:
        """Test two long inputs sharing a prefix derive different names."""
        prefix = "x" * 40
        first = derive_identifier(prefix + "-one", SERVICE_ACCOUNT_ID_RULE)
        second = derive_identifier(prefix + "-two", SERVICE_ACCOUNT_ID_RULE)

        assert first != second
        assert first[:-HASH_SUFFIX_LENGTH] == second[:-HASH_SUFFIX_LENGTH]

    def test_deterministic(self) -> None:
        """Test repeated derivation gives identical output."""
        base = "Some Service With A Rather Long Name Indeed"
        results = {derive_identifier(base, VOLUME_NAME_RULE) for _ in range(5)}
        assert len(results) == 1

    def test_leading_letter_prefix(self) -> None:
        """Test a digit-led name gets a letter prefix when required."""
        assert derive_identifier("9lives-api", SERVICE_ACCOUNT_ID_RULE) == "r-9lives-api"

    def test_too_short_rejected(self) -> None:
        """Test a name below the minimum length raises."""
        with pytest.raises(NameDerivationError, match="shorter than the minimum"):
            derive_identifier("ab", SERVICE_ACCOUNT_ID_RULE)

    def test_no_usable_characters(self) -> None:
        """Test input without valid characters raises."""
        with pytest.raises(NameDerivationError, match="no usable characters"):
            derive_identifier("___", VOLUME_NAME_RULE)

    def test_rule_rejects_tiny_max_length(self) -> None:
        """Test a rule cannot be too short to hold the hash suffix."""
        with pytest.raises(ValueError, match="max_length too small"):
            NameRule(min_length=1, max_length=5)


class TestServiceAccount:
    """Tests for service identity naming."""

    def test_default_account_id(self) -> None:
        """Test the account id defaults to '{service}-sa'."""
        assert service_account_id("billing") == "billing-sa"

    def test_explicit_account_id(self) -> None:
        """Test an explicit account id takes precedence."""
        assert service_account_id("billing", "billing-runner") == "billing-runner"

    def test_short_service_name_rejected(self) -> None:
        """Test a service name too short for a 6-char account id."""
        with pytest.raises(NameDerivationError):
            service_account_id("ab")

    def test_email(self) -> None:
        """Test the email format of a service identity."""
        assert (
            service_account_email("billing-sa", "demo-project")
            == "billing-sa@demo-project.iam.gserviceaccount.com"
        )


class TestVolumeName:
    """Tests for secret volume naming."""

    def test_volume_name(self) -> None:
        """Test volume names combine secret, mount path and a digest of both."""
        assert volume_name("db-password", "/etc/secrets/db") == (
            f"db-password-etc-secrets-db-{content_hash('db-password-/etc/secrets/db')}"
        )

    def test_paths_normalizing_alike_stay_distinct(self) -> None:
        """Test mount paths that differ only in separators derive different names."""
        first = volume_name("s", "/etc/a-b")
        second = volume_name("s", "/etc/a/b")

        assert first != second
        assert first.startswith("s-etc-a-b-")
        assert second.startswith("s-etc-a-b-")

    def test_lossless_base_has_no_digest(self) -> None:
        """Test a base that is already a valid name is kept as is."""
        assert derive_identifier("cache", VOLUME_NAME_RULE) == "cache"

    def test_volume_name_within_dns_label(self) -> None:
        """Test long volume names fit in 63 characters."""
        name = volume_name("s" * 50, "/very/deep/mount/path/for/secret")
        assert len(name) <= 63
