"""Error taxonomy, reason codes and remediation hints."""

from __future__ import annotations

import re
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fleetdeploy.domain.models.results import CommandResult


class ReasonCode(str, Enum):
    """Machine-readable failure reasons carried by every failed domain."""

    VALIDATION_FAILED = "validation_failed"
    ASSESSMENT_BLOCKED = "assessment_blocked"
    PERMISSION_DENIED = "permission_denied"
    TRANSIENT_REMOTE_ERROR = "transient_remote_error"
    REMOTE_FATAL = "remote_fatal"
    STORE_NOT_FOUND = "store_not_found"
    MIGRATION_FAILED = "migration_failed"
    DEPLOY_FAILED = "deploy_failed"
    VERIFICATION_FAILED = "verification_failed"
    TIMEOUT = "timeout"
    INTERRUPTED = "interrupted"
    CANCELLED = "cancelled"
    DOMAIN_BUSY = "domain_busy"
    UNEXPECTED_ERROR = "unexpected_error"


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    PERMISSION = "permission"
    TRANSIENT = "transient"
    UNRECOVERABLE = "unrecoverable"


REMEDIATIONS: dict[ReasonCode, str] = {
    ReasonCode.VALIDATION_FAILED: "Fix the domain configuration errors listed above and re-run.",
    ReasonCode.ASSESSMENT_BLOCKED: (
        "Grant the missing permissions to the API token, or re-run with --force "
        "to bypass the assessment gate."
    ),
    ReasonCode.PERMISSION_DENIED: (
        "Check that the API token is valid and carries the required permission scopes."
    ),
    ReasonCode.TRANSIENT_REMOTE_ERROR: (
        "The platform was temporarily unavailable; wait a moment and retry."
    ),
    ReasonCode.REMOTE_FATAL: "Inspect the deploy tool output above and fix the reported problem.",
    ReasonCode.STORE_NOT_FOUND: (
        "Create the database first (wrangler d1 create <name>) and record it in the "
        "domain configuration."
    ),
    ReasonCode.MIGRATION_FAILED: (
        "Check the migration files for syntax errors, then re-run the migration."
    ),
    ReasonCode.DEPLOY_FAILED: "Check the worker configuration and the deploy tool output.",
    ReasonCode.VERIFICATION_FAILED: (
        "The worker deployed but did not pass its health check; inspect its logs."
    ),
    ReasonCode.TIMEOUT: "The operation timed out; check network connectivity and retry.",
    ReasonCode.INTERRUPTED: (
        "A previous run stopped mid-deployment; inspect the domain and redeploy."
    ),
    ReasonCode.CANCELLED: "The run was cancelled before this domain started.",
    ReasonCode.DOMAIN_BUSY: (
        "Another run is deploying this domain; wait for it to finish and re-run."
    ),
    ReasonCode.UNEXPECTED_ERROR: "An unexpected error occurred; re-run with --verbose for details.",
}


def remediation_for(reason_code: ReasonCode | str) -> str:
    """Operator hint for a reason code; unknown codes get a generic hint."""
    try:
        return REMEDIATIONS[ReasonCode(reason_code)]
    except ValueError:
        return REMEDIATIONS[ReasonCode.UNEXPECTED_ERROR]


# Ordered: permission problems are checked before transient ones so that a
# "403 ... try again" message is not retried.
FAILURE_PATTERNS: list[tuple[re.Pattern[str], ErrorCategory]] = [
    (re.compile(r"authentication|unauthori[sz]ed|\b401\b|\b403\b|forbidden", re.I),
     ErrorCategory.PERMISSION),
    (re.compile(r"permission|not allowed|insufficient scope", re.I), ErrorCategory.PERMISSION),
    (re.compile(r"rate.?limit|too many requests|\b429\b", re.I), ErrorCategory.TRANSIENT),
    (re.compile(r"\b5\d\d\b|service unavailable|bad gateway|internal server error", re.I),
     ErrorCategory.TRANSIENT),
    (re.compile(r"timed? ?out|ETIMEDOUT|ECONNRESET|ECONNREFUSED|network error", re.I),
     ErrorCategory.TRANSIENT),
]


def classify_failure(text: str) -> ErrorCategory:
    """Classify remote tool output; anything unmatched is unrecoverable."""
    for pattern, category in FAILURE_PATTERNS:
        if pattern.search(text or ""):
            return category
    return ErrorCategory.UNRECOVERABLE


class FleetDeployError(Exception):
    """Base error carrying a reason code and a remediation hint."""

    reason_code: ReasonCode = ReasonCode.UNEXPECTED_ERROR

    def __init__(
        self,
        message: str,
        reason_code: ReasonCode | None = None,
        remediation: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if reason_code is not None:
            self.reason_code = reason_code
        self.remediation = remediation or remediation_for(self.reason_code)


class PrerequisiteValidationError(FleetDeployError):
    reason_code = ReasonCode.VALIDATION_FAILED

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class PermissionDeniedError(FleetDeployError):
    reason_code = ReasonCode.PERMISSION_DENIED


def _render_output(message: str, exit_code: int | None, stdout: str, stderr: str) -> str:
    parts = [message if exit_code is None else f"{message} (exit code {exit_code})"]
    if stderr:
        parts.append(f"stderr:\n{stderr}")
    if stdout:
        parts.append(f"stdout:\n{stdout}")
    return "\n".join(parts)


class TransientRemoteError(FleetDeployError):
    """A remote failure worth retrying (rate limit, brief unavailability).

    When raised for a finished command, the exit code and output are kept
    verbatim so the last attempt can be reported once retries run out.
    """

    reason_code = ReasonCode.TRANSIENT_REMOTE_ERROR

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr

    def __str__(self) -> str:
        return _render_output(self.message, self.exit_code, self.stdout, self.stderr)


class CommandTimeoutError(TransientRemoteError):
    reason_code = ReasonCode.TIMEOUT


class RemoteCommandError(FleetDeployError):
    """The remote tool exited non-zero; output is kept verbatim."""

    reason_code = ReasonCode.REMOTE_FATAL

    def __init__(
        self,
        message: str,
        exit_code: int,
        stdout: str = "",
        stderr: str = "",
        reason_code: ReasonCode | None = None,
    ) -> None:
        super().__init__(message, reason_code=reason_code)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr

    def __str__(self) -> str:
        return _render_output(self.message, self.exit_code, self.stdout, self.stderr)


def raise_for_result(result: CommandResult, operation: str, reason: ReasonCode) -> None:
    """Turn a failed command into the matching error; transient failures are retryable."""
    if result.succeeded:
        return
    category = classify_failure(result.output)
    message = f"{operation} failed"
    if category == ErrorCategory.TRANSIENT:
        raise TransientRemoteError(
            message, exit_code=result.exit_code, stdout=result.stdout, stderr=result.stderr
        )
    raise RemoteCommandError(
        message,
        exit_code=result.exit_code,
        stdout=result.stdout,
        stderr=result.stderr,
        reason_code=(
            ReasonCode.PERMISSION_DENIED if category == ErrorCategory.PERMISSION else reason
        ),
    )


class StoreNotFoundError(FleetDeployError):
    reason_code = ReasonCode.STORE_NOT_FOUND


class InvalidStateTransitionError(FleetDeployError):
    """Raised when an invalid state transition is attempted."""


class DomainBusyError(InvalidStateTransitionError):
    """Another run owns the domain; its state must not be touched."""

    reason_code = ReasonCode.DOMAIN_BUSY


class StateNotFoundError(FleetDeployError):
    pass


class StatePersistenceError(FleetDeployError):
    """The state file could not be read or written."""


class ConfigurationError(FleetDeployError):
    reason_code = ReasonCode.VALIDATION_FAILED
