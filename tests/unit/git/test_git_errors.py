from __future__ import annotations

import pytest

from scenariosync.core.models import SyncFailureKind
from scenariosync.git.errors import classify_failure, is_retryable, to_sync_error
from scenariosync.git.facade import GitCommandError, GitTimeoutError


def _failure(stderr: str, stdout: str = "") -> GitCommandError:
    return GitCommandError(("git", "push", "origin"), 128, stdout, stderr)


@pytest.mark.parametrize(
    ("stderr", "kind"),
    [
        ("fatal: Authentication failed for 'https://example.com/repo.git/'", SyncFailureKind.authentication),
        ("fatal: could not read Username for 'https://example.com': terminal prompts disabled", SyncFailureKind.authentication),
        ("remote: Permission denied to planner.", SyncFailureKind.permission),
        ("remote: error: GH006: Protected branch update failed", SyncFailureKind.permission),
        (" ! [rejected]        main -> main (fetch first)", SyncFailureKind.rejected),
        ("fatal: unable to access 'https://example.com/': Could not resolve host: example.com", SyncFailureKind.network),
        ("fatal: the remote end hung up unexpectedly", SyncFailureKind.network),
        ("fatal: something nobody anticipated", SyncFailureKind.unknown),
    ],
)
def test_classify_failure(stderr: str, kind: SyncFailureKind) -> None:
    """stderr patterns map onto failure categories."""
    assert classify_failure(_failure(stderr)) is kind


def test_timeouts_classify_as_timeout() -> None:
    """Timeouts are recognised by type, not by message."""
    assert classify_failure(GitTimeoutError(("git", "fetch"), 10)) is SyncFailureKind.timeout


def test_only_transient_failures_are_retryable() -> None:
    """Network problems and timeouts are retried; rejections are not."""
    assert is_retryable(SyncFailureKind.network)
    assert is_retryable(SyncFailureKind.timeout)
    assert not is_retryable(SyncFailureKind.authentication)
    assert not is_retryable(SyncFailureKind.rejected)
    assert not is_retryable(SyncFailureKind.unknown)


def test_to_sync_error_keeps_last_stderr_line() -> None:
    """The final stderr line is the most specific message git prints."""
    error = to_sync_error(
        "push",
        _failure("To example.com:repo.git\n ! [rejected]        main -> main (non-fast-forward)\n"),
        attempts=2,
    )

    assert error.kind is SyncFailureKind.rejected
    assert error.detail == "! [rejected]        main -> main (non-fast-forward)"
    assert error.attempts == 2
    assert not error.retryable
    assert error.to_dict()["kind"] == "rejected"
    assert str(error).startswith("push failed (rejected) after 2 attempt(s)")
