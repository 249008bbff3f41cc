"""Translate failed remote git commands into :class:`SyncError` categories."""

from __future__ import annotations

from scenariosync.core.errors import SyncError
from scenariosync.core.models import SyncFailureKind
from scenariosync.git.facade import GitCommandError, GitTimeoutError


_PATTERNS: tuple[tuple[SyncFailureKind, tuple[str, ...]], ...] = (
    (
        SyncFailureKind.authentication,
        (
            "authentication failed",
            "invalid credentials",
            "could not read username",
            "could not read password",
            "bad credentials",
            "401",
            "403 forbidden",
        ),
    ),
    (
        SyncFailureKind.permission,
        (
            "permission denied",
            "insufficient permission",
            "protected branch",
            "you are not allowed",
        ),
    ),
    (
        SyncFailureKind.rejected,
        (
            "non-fast-forward",
            "[rejected]",
            "rejected",
            "fetch first",
        ),
    ),
    (
        SyncFailureKind.network,
        (
            "could not resolve host",
            "unable to access",
            "connection refused",
            "connection timed out",
            "connection reset",
            "network is unreachable",
            "could not read from remote repository",
            "the remote end hung up unexpectedly",
            "does not appear to be a git repository",
            "enotfound",
            "econnrefused",
            "etimedout",
            "getaddrinfo",
        ),
    ),
)

_RETRYABLE = frozenset({SyncFailureKind.network, SyncFailureKind.timeout})


def classify_failure(error: GitCommandError) -> SyncFailureKind:
    """Return the failure category for a failed git command."""
    if isinstance(error, GitTimeoutError):
        return SyncFailureKind.timeout
    text = f"{error.stderr}\n{error.stdout}".lower()
    for kind, patterns in _PATTERNS:
        if any(pattern in text for pattern in patterns):
            return kind
    return SyncFailureKind.unknown


def is_retryable(kind: SyncFailureKind) -> bool:
    """Return True for transient failures worth another attempt."""
    return kind in _RETRYABLE


def to_sync_error(operation: str, error: GitCommandError, *, attempts: int = 1) -> SyncError:
    """Wrap ``error`` in a classified :class:`SyncError`."""
    kind = classify_failure(error)
    return SyncError(
        operation, kind, error.detail or str(error), retryable=is_retryable(kind), attempts=attempts,
    )


__all__ = ["classify_failure", "is_retryable", "to_sync_error"]
