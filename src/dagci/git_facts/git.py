# git.py
# Small, focused wrapper around the Git CLI.
# Cache key templates ({{ .Revision }}, {{ .Branch }}) are the only consumers.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: List of git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero
        FileNotFoundError: git is not installed
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Return the full SHA hash of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: Optional[str | Path] = None) -> str:
    """
    Return the checked-out branch name.

    A detached HEAD reports "HEAD", matching `git rev-parse --abbrev-ref`.
    """
    return _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
