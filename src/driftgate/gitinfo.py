# Copyright (c) Syntropy Systems
"""Git repository introspection."""
from __future__ import annotations

from typing import TYPE_CHECKING

from driftgate.models.capture import GitInfo
from driftgate.runner import run_command

if TYPE_CHECKING:
    from pathlib import Path


def _git(args: list[str], cwd: Path | None) -> str | None:
    result = run_command(["git", *args], timeout=5, cwd=cwd)
    if result is None or result.returncode != 0:
        return None
    return result.stdout.strip()


def capture_git_info(cwd: Path | None = None) -> GitInfo | None:
    """Capture git repository information, None outside a work tree."""
    if _git(["rev-parse", "--is-inside-work-tree"], cwd) is None:
        return None

    commit = _git(["rev-parse", "HEAD"], cwd)
    short_hash = _git(["rev-parse", "--short", "HEAD"], cwd)
    if commit is None or short_hash is None:
        return None

    # Dirty if there are uncommitted changes
    status = _git(["status", "--porcelain"], cwd)
    if status is None:
        return None

    branch = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd) or "HEAD"
    remote = _git(["remote", "get-url", "origin"], cwd)

    return GitInfo(
        branch=branch,
        head_commit=commit,
        head_short=short_hash,
        dirty=bool(status),
        remote=remote,
    )


def current_branch(cwd: Path | None = None) -> str | None:
    """Name of the checked-out branch, None outside a work tree."""
    return _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)
