# git.py
# Small, focused wrapper around the Git CLI.
# The CLI uses it to default --ref and --changed-file from the current checkout.

from __future__ import annotations

import subprocess
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises CalledProcessError when git exits non-zero, which callers either
    propagate or turn into a fallback.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str] = None) -> str:
    """Return the full SHA hash of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def exact_tag(cwd: Optional[str] = None) -> Optional[str]:
    """Tag pointing exactly at HEAD, if any."""
    try:
        return _git(["describe", "--tags", "--exact-match", "HEAD"], cwd=cwd) or None
    except subprocess.CalledProcessError:
        return None


def current_ref(cwd: Optional[str] = None) -> str:
    """
    Fully-qualified ref for the checkout, in the form trigger events use:
      - refs/tags/<tag>  when HEAD is exactly a tag
      - refs/heads/<branch> otherwise
      - the bare SHA on a detached HEAD
    """
    tag = exact_tag(cwd)
    if tag:
        return f"refs/tags/{tag}"
    try:
        return _git(["symbolic-ref", "HEAD"], cwd=cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd)


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str] = None) -> List[str]:
    """
    Return a list of files changed between two Git references, relative to
    the repository root.
    """
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd)
    if not out:
        return []
    return out.splitlines()


def merge_base(with_ref: str = "origin/main", cwd: Optional[str] = None) -> str:
    """Return the merge-base (common ancestor) between HEAD and another ref."""
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)


def changed_since(compare_ref: str = "origin/main", cwd: Optional[str] = None) -> List[str]:
    """
    Files changed on this branch relative to `compare_ref`.
    Falls back to HEAD~1 when the ref is unknown (no remote, shallow clone).
    """
    try:
        base = merge_base(compare_ref, cwd=cwd)
    except subprocess.CalledProcessError:
        base = "HEAD~1"
    try:
        return changed_files(base, "HEAD", cwd=cwd)
    except subprocess.CalledProcessError:
        return []
