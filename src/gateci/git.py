# git.py
# Small wrapper around the Git CLI, used to stamp run reports with the
# commit they were produced from.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Dict, Optional, Union


def _git(args: list[str], cwd: Optional[Union[str, Path]] = None) -> str:
    """
    Execute a git command and return its stdout, stripped.

    Raises CalledProcessError on a non-zero exit and FileNotFoundError when
    git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[Union[str, Path]] = None) -> str:
    """Full SHA of the HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[Union[str, Path]] = None) -> str:
    """Current branch name, or the commit SHA on a detached HEAD."""
    ref = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return head_sha(cwd) if ref == "HEAD" else ref


def is_dirty(cwd: Optional[Union[str, Path]] = None) -> bool:
    # any porcelain output means uncommitted changes
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def source_facts(cwd: Optional[Union[str, Path]] = None) -> Optional[Dict[str, object]]:
    """
    Commit, ref and dirty flag of the source tree, or None when `cwd` is not
    inside a git work tree (or git is unavailable).
    """
    try:
        return {
            "commit": head_sha(cwd),
            "ref": current_ref(cwd),
            "dirty": is_dirty(cwd),
        }
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None
