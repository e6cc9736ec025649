# trigger.py
# Turns a raw event (push / tag push / pull request) into an immutable
# TriggerContext. Pure functions only; nothing here touches git or the network.

from __future__ import annotations

from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import Iterable, Optional, Tuple

from .model import EventKind, TriggerContext

TAG_REF_PATTERN = "refs/tags/v*"
BRANCH_PREFIX = "refs/heads/"


@dataclass(frozen=True)
class RawEvent:
    """Event descriptor as delivered by a webhook, the CLI or a test."""
    event_kind: EventKind | str
    ref: str
    changed_files: Tuple[str, ...] = ()
    base_ref: Optional[str] = None

    def __post_init__(self) -> None:
        # frozen: normalize through object.__setattr__
        object.__setattr__(self, "event_kind", EventKind.parse(self.event_kind))
        object.__setattr__(self, "changed_files", tuple(self.changed_files or ()))


@dataclass(frozen=True)
class TriggerRules:
    """
    When a workflow fires.

      main_branch:  pushes to refs/heads/<main_branch> activate the run
      tag_pattern:  refs matching it are release tags (isTagRef)
      paths:        pull requests only activate when a changed file matches
      pr_branches:  pull requests only activate when targeting one of these
    """
    main_branch: str = "main"
    tag_pattern: str = TAG_REF_PATTERN
    paths: Tuple[str, ...] = field(default_factory=tuple)
    pr_branches: Tuple[str, ...] = ("main",)


def is_tag_ref(ref: str, pattern: str = TAG_REF_PATTERN) -> bool:
    return fnmatchcase(ref, pattern)


def branch_name(ref: str) -> str:
    return ref[len(BRANCH_PREFIX):] if ref.startswith(BRANCH_PREFIX) else ref


def path_matches(path: str, pattern: str) -> bool:
    """
    Match a repo-relative path against a filter:
      - "bindings/nodejs/**"   glob (`*` crosses directories, like fnmatch)
      - "bindings/nodejs/"     directory prefix
      - ".github/workflows/x"  exact file
    """
    if path.startswith("./"):
        path = path[2:]
    if pattern.endswith("/"):
        return path.startswith(pattern)
    if pattern.endswith("/**") and path == pattern[:-3]:
        return True
    return fnmatchcase(path, pattern)


def matches_any(paths: Iterable[str], patterns: Iterable[str]) -> bool:
    patterns = list(patterns)
    return any(path_matches(p, pat) for p in paths for pat in patterns)


def evaluate(event: RawEvent, rules: Optional[TriggerRules] = None) -> TriggerContext:
    """
    Classify an event into a TriggerContext.

    A context with active=False is a no-op run: no job is ever scheduled.
    """
    rules = rules or TriggerRules()
    kind = EventKind.parse(event.event_kind)
    tag = is_tag_ref(event.ref, rules.tag_pattern)
    changed = frozenset(event.changed_files)

    # a plain push of a release tag is a tagged push
    if kind is EventKind.PUSH and tag:
        kind = EventKind.TAGGED_PUSH

    active = True
    reason = ""

    if kind is EventKind.PUSH:
        if event.ref != f"{BRANCH_PREFIX}{rules.main_branch}":
            active = False
            reason = f"push to {event.ref} is not the main branch ({rules.main_branch})"

    elif kind is EventKind.PULL_REQUEST:
        if event.base_ref is not None and branch_name(event.base_ref) not in rules.pr_branches:
            active = False
            reason = f"pull request targets {branch_name(event.base_ref)}, not one of {list(rules.pr_branches)}"
        elif rules.paths and not matches_any(changed, rules.paths):
            active = False
            reason = f"no changed file matches {list(rules.paths)}"

    return TriggerContext(
        event_kind=kind,
        ref=event.ref,
        changed_paths=changed,
        is_tag_ref=tag,
        active=active,
        base_ref=event.base_ref,
        reason=reason,
    )
