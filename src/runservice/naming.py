"""Derived identifiers for generated resources.

Generated resources (service identities, secret volumes) need names that
satisfy platform length and charset rules while staying identical across
passes. A name that changed between passes would look like a replacement
to the reconciler, so derivation is a pure function of its input.

Normalization:
1. Lower-case the input
2. Collapse every run of characters outside [a-z0-9] into one "-"
3. Strip leading/trailing separators
4. Prefix a letter when the rule requires one
5. If the result exceeds the rule's max length, truncate and append a
   short SHA-256 digest of the ORIGINAL input, so two long inputs sharing
   a prefix still derive different names
6. Rules with hash_when_lossy also append the digest whenever step 2
   changed the input, so "/etc/a-b" and "/etc/a/b" stay distinct
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass

SEPARATOR = "-"
HASH_SUFFIX_LENGTH = 6

_INVALID_RUN = re.compile(r"[^a-z0-9]+")


class NameDerivationError(ValueError):
    """Raised when no valid identifier can be derived from an input."""

    pass


@dataclass(frozen=True)
class NameRule:
    """Length and charset constraints for a derived identifier."""

    min_length: int
    max_length: int
    leading_letter: bool = False
    letter_prefix: str = "r"
    hash_when_lossy: bool = False

    def __post_init__(self) -> None:
        # The hash suffix plus its separator and one prefix char must fit
        if self.max_length < HASH_SUFFIX_LENGTH + 2:
            raise ValueError(f"max_length too small for hash suffix: {self.max_length}")
        if not 1 <= self.min_length <= self.max_length:
            raise ValueError("min_length must be between 1 and max_length")


# Service identity account ids: 6-30 chars, start with a letter
SERVICE_ACCOUNT_ID_RULE = NameRule(min_length=6, max_length=30, leading_letter=True)

# Volume names on the run service: DNS-label sized
VOLUME_NAME_RULE = NameRule(
    min_length=1, max_length=63, leading_letter=True, letter_prefix="v", hash_when_lossy=True
)


def content_hash(value: str, length: int = HASH_SUFFIX_LENGTH) -> str:
    """Return the first `length` hex characters of the SHA-256 of value."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:length]


def normalize(value: str) -> str:
    """Lower-case and collapse invalid character runs into separators."""
    return _INVALID_RUN.sub(SEPARATOR, value.lower()).strip(SEPARATOR)


def derive_identifier(base: str, rule: NameRule) -> str:
    """Derive a deterministic identifier from base that satisfies rule.

    Args:
        base: Human-chosen input (service name, mount path, ...).
        rule: Length/charset constraints of the target platform.

    Returns:
        The derived identifier.

    Raises:
        NameDerivationError: If the input normalizes to nothing or to
            something shorter than rule.min_length.
    """
    name = normalize(base)
    if not name:
        raise NameDerivationError(f"'{base}' contains no usable characters")
    lossy = rule.hash_when_lossy and name != base

    if rule.leading_letter and not name[0].isalpha():
        name = f"{rule.letter_prefix}{SEPARATOR}{name}"

    if lossy or len(name) > rule.max_length:
        keep = rule.max_length - HASH_SUFFIX_LENGTH - len(SEPARATOR)
        name = f"{name[:keep].rstrip(SEPARATOR)}{SEPARATOR}{content_hash(base)}"

    if len(name) < rule.min_length:
        raise NameDerivationError(
            f"'{base}' derives '{name}', shorter than the minimum of {rule.min_length}"
        )

    return name


def service_account_id(service_name: str, account_id: str | None = None) -> str:
    """Account id for a generated service identity.

    Uses the explicit account id when given, otherwise "{service}-sa".
    """
    return derive_identifier(account_id or f"{service_name}-sa", SERVICE_ACCOUNT_ID_RULE)


def service_account_email(account_id: str, project_id: str) -> str:
    """Email address of a service identity in project_id."""
    return f"{account_id}@{project_id}.iam.gserviceaccount.com"


def volume_name(secret_id: str, mount_path: str) -> str:
    """Name of the volume that mounts secret_id at mount_path."""
    return derive_identifier(f"{secret_id}-{mount_path}", VOLUME_NAME_RULE)
