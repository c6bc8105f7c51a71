"""Map raw export records onto the canonical user shape.

Pure functions, no I/O. CSV rows carry separate primary / verified /
unverified email columns which are merged here; JSON objects carry one
pipe-delimited `email_addresses` field.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Mapping, Optional

from scripts.user_migration.errors import ValidationError
from scripts.user_migration.models import CanonicalUserRecord, RawRecord, RecordLayout

DEFAULT_PASSWORD_HASHER = "bcrypt"

# Hash types accepted by WorkOS for imported password digests
SUPPORTED_PASSWORD_HASHERS = frozenset(
    {"bcrypt", "firebase-scrypt", "ssha", "scrypt", "pbkdf2", "argon2"}
)

_LIST_SEPARATOR = re.compile(r"[|,;]\s*")


def normalize(raw: RawRecord) -> CanonicalUserRecord:
    """Build a CanonicalUserRecord, raising ValidationError on bad input."""
    if not isinstance(raw.data, Mapping):
        raise ValidationError(
            f"Expected an object, got {type(raw.data).__name__}"
        )
    if raw.layout is RecordLayout.ROW:
        return _normalize_row(raw.data)
    return _normalize_object(raw.data)


def _normalize_row(row: Mapping[str, Any]) -> CanonicalUserRecord:
    primary = _optional_text(row, "primary_email_address")
    verified = split_list(row.get("verified_email_addresses"))

    emails = merge_emails(
        split_list(primary),
        verified,
        split_list(row.get("unverified_email_addresses")),
    )

    primary_email_verified = None
    if primary is not None:
        verified_set = {e.lower() for e in verified}
        primary_email_verified = primary.lower() in verified_set

    return _build(
        row,
        emails=emails,
        primary_email_verified=primary_email_verified,
        metadata={},
    )


def _normalize_object(obj: Mapping[str, Any]) -> CanonicalUserRecord:
    raw_emails = obj.get("email_addresses")
    if isinstance(raw_emails, str):
        emails = [e.strip() for e in raw_emails.split("|") if e.strip()]
    elif isinstance(raw_emails, list) and all(isinstance(e, str) for e in raw_emails):
        emails = [e.strip() for e in raw_emails if e.strip()]
    elif raw_emails is None:
        emails = []
    else:
        raise ValidationError("email_addresses must be a string")

    verified = obj.get("primary_email_verified")
    if verified is not None and not isinstance(verified, bool):
        raise ValidationError("primary_email_verified must be a boolean")

    metadata = {}
    for key in ("unsafe_metadata", "public_metadata", "private_metadata"):
        value = obj.get(key)
        if value is None:
            continue
        if not isinstance(value, Mapping):
            raise ValidationError(f"{key} must be an object")
        metadata[key] = dict(value)

    return _build(obj, emails=emails, primary_email_verified=verified, metadata=metadata)


def _build(
    source: Mapping[str, Any],
    emails: list[str],
    primary_email_verified: Optional[bool],
    metadata: dict[str, dict],
) -> CanonicalUserRecord:
    user_id = _optional_text(source, "id")
    if user_id is None:
        raise ValidationError("Missing required field: id")
    if not emails:
        raise ValidationError(f"User {user_id} has no email address")

    digest = _optional_text(source, "password_digest")
    hasher = _optional_text(source, "password_hasher")
    if digest is not None:
        hasher = (hasher or DEFAULT_PASSWORD_HASHER).lower()
        if hasher not in SUPPORTED_PASSWORD_HASHERS:
            raise ValidationError(f"Unsupported password hasher: {hasher}")

    return CanonicalUserRecord(
        id=user_id,
        email_addresses=tuple(emails),
        first_name=_optional_text(source, "first_name"),
        last_name=_optional_text(source, "last_name"),
        username=_optional_text(source, "username"),
        password_digest=digest,
        password_hasher=hasher if digest is not None else None,
        primary_email_verified=primary_email_verified,
        unsafe_metadata=metadata.get("unsafe_metadata", {}),
        public_metadata=metadata.get("public_metadata", {}),
        private_metadata=metadata.get("private_metadata", {}),
    )


def _optional_text(source: Mapping[str, Any], key: str) -> Optional[str]:
    value = source.get(key)
    if value is None:
        return None
    if isinstance(value, (dict, list, bool)):
        raise ValidationError(f"{key} must be a string")
    text = str(value).strip()
    return text or None


def split_list(value: Any) -> list[str]:
    """Split a `|`, `,` or `;` separated cell into its non-blank entries."""
    if value is None:
        return []
    text = str(value).strip()
    if not text:
        return []
    return [part.strip() for part in _LIST_SEPARATOR.split(text) if part.strip()]


def merge_emails(*groups: Iterable[str]) -> list[str]:
    """Concatenate groups in order, dropping case-insensitive repeats."""
    emails: list[str] = []
    seen: set[str] = set()
    for group in groups:
        for email in group:
            key = email.lower()
            if key not in seen:
                seen.add(key)
                emails.append(email)
    return emails
