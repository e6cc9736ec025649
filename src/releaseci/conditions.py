# conditions.py
# Run conditions are plain predicates over (TriggerContext, upstream results).
# They compose with &, | and ~ instead of a string expression language.

from __future__ import annotations

from typing import Callable, Iterable

from .model import EventKind, JobStatus, TriggerContext, UpstreamResults
from .trigger import BRANCH_PREFIX, is_tag_ref, matches_any

Predicate = Callable[[TriggerContext, UpstreamResults], bool]


class Condition:
    def __init__(self, fn: Predicate, description: str):
        self._fn = fn
        self.description = description

    def __call__(self, ctx: TriggerContext, upstream: UpstreamResults | None = None) -> bool:
        return bool(self._fn(ctx, upstream or {}))

    def __and__(self, other: Condition) -> Condition:
        return Condition(
            lambda c, u: self(c, u) and other(c, u),
            f"({self.description} && {other.description})",
        )

    def __or__(self, other: Condition) -> Condition:
        return Condition(
            lambda c, u: self(c, u) or other(c, u),
            f"({self.description} || {other.description})",
        )

    def __invert__(self) -> Condition:
        return Condition(lambda c, u: not self(c, u), f"!{self.description}")

    def __repr__(self) -> str:
        return f"Condition({self.description})"


def condition(description: str) -> Callable[[Predicate], Condition]:
    """Decorator form: @condition("nightly") def nightly(ctx, upstream): ..."""
    def wrap(fn: Predicate) -> Condition:
        return Condition(fn, description)
    return wrap


def always() -> Condition:
    return Condition(lambda c, u: True, "always()")


def never() -> Condition:
    return Condition(lambda c, u: False, "never()")


def on_tag() -> Condition:
    """True for release tags, as classified by the trigger evaluator."""
    return Condition(lambda c, u: c.is_tag_ref, "is_tag_ref")


def ref_matches(pattern: str) -> Condition:
    return Condition(lambda c, u: is_tag_ref(c.ref, pattern), f"ref =~ {pattern}")


def ref_startswith(prefix: str) -> Condition:
    return Condition(lambda c, u: c.ref.startswith(prefix), f"startsWith(ref, {prefix!r})")


def on_branch(name: str) -> Condition:
    return Condition(lambda c, u: c.ref == f"{BRANCH_PREFIX}{name}", f"branch == {name}")


def on_event(*kinds: EventKind | str) -> Condition:
    wanted = {EventKind.parse(k) for k in kinds}
    label = ",".join(sorted(k.value for k in wanted))
    return Condition(lambda c, u: c.event_kind in wanted, f"event in [{label}]")


def paths_changed(*patterns: str) -> Condition:
    return Condition(
        lambda c, u: matches_any(c.changed_paths, patterns),
        f"changed({', '.join(patterns)})",
    )


def upstream_succeeded(*names: str) -> Condition:
    """Useful together with tolerate_upstream_failure."""
    def check(c: TriggerContext, u: UpstreamResults) -> bool:
        targets: Iterable[str] = names or list(u.keys())
        return all(u.get(n) is JobStatus.SUCCEEDED for n in targets)
    return Condition(check, f"succeeded({', '.join(names) or '*'})")


def upstream_failed(*names: str) -> Condition:
    def check(c: TriggerContext, u: UpstreamResults) -> bool:
        targets: Iterable[str] = names or list(u.keys())
        return any(u.get(n) is JobStatus.FAILED for n in targets)
    return Condition(check, f"failed({', '.join(names) or '*'})")
