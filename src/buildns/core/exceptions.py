"""Error taxonomy for the domain-claim core.

Validation and contention errors are raised synchronously to the caller and
are never retried. Transient failures of external collaborators (certificate
authority, DNS backend) are retried internally and only surface as
CertificateIssuanceFailed once the retry ceiling is reached.
"""

from __future__ import annotations


class BuildnsError(Exception):
    """Base class for all buildns errors."""

    code = "error"

    def __init__(self, message: str, hint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint


class NameTaken(BuildnsError):
    """The (name, tld) pair is already claimed."""

    code = "name_taken"


class InvalidName(BuildnsError):
    code = "invalid_name"


class NotOwner(BuildnsError):
    code = "not_owner"


class NotFound(BuildnsError):
    code = "not_found"


class ConflictingRecord(BuildnsError):
    """An A or CNAME record already exists for the label with the other type."""

    code = "conflicting_record"


class InvalidRecord(BuildnsError):
    code = "invalid_record"


class InvalidTarget(BuildnsError):
    """Connect target does not match the requested record type."""

    code = "invalid_target"


class InvalidStatusCode(BuildnsError):
    code = "invalid_status_code"


class AlreadyEnabled(BuildnsError):
    """Soft error: the requested state is already in place.

    The lifecycle controller treats this as a successful no-op.
    """

    code = "already_enabled"


class CertificateIssuanceFailed(BuildnsError):
    """Issuance exhausted its retry ceiling. The domain stays reachable over HTTP."""

    code = "certificate_issuance_failed"


class UpgradeConflict(BuildnsError):
    code = "upgrade_conflict"


class InvalidTransition(BuildnsError):
    """A certificate state change not allowed by the state machine."""

    code = "invalid_transition"


def format_error_for_user(error: Exception) -> str:
    """Render an error as a short message for terminal output."""
    if isinstance(error, BuildnsError):
        text = f"{error.message} ({error.code})"
        if error.hint:
            text += f"\nHint: {error.hint}"
        return text
    return f"Unexpected error: {error}"
