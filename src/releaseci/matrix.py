# matrix.py
from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .errors import WorkflowError
from .model import JobInstance, JobSpec

Binding = Dict[str, Any]


@dataclass
class Matrix:
    """
    Axis declaration for a job template.

    Examples:
        Matrix(axes={"os": ["linux", "macos"], "arch": ["x64", "arm64"]})
        Matrix(include=[{"os": "linux", "arch": "x64", "target": "x86_64-unknown-linux-gnu"}])
    """
    axes: Dict[str, List[Any]] = field(default_factory=dict)
    include: List[Dict[str, Any]] = field(default_factory=list)
    exclude: List[Dict[str, Any]] = field(default_factory=list)


def _matches(binding: Mapping[str, Any], partial: Mapping[str, Any]) -> bool:
    return all(k in binding and binding[k] == v for k, v in partial.items())


def expand(matrix: Matrix) -> List[Binding]:
    """
    Enumerate the concrete axis bindings of a matrix.

      1. cartesian product of `axes`, in declaration order
      2. drop combinations matched by any `exclude` entry
      3. fold `include` entries: an entry whose axis values agree with existing
         combinations extends them with its extra keys; otherwise it is added
         as a combination of its own
    """
    for name, values in matrix.axes.items():
        if not isinstance(values, (list, tuple)):
            raise WorkflowError(f"Matrix axis {name!r} must be a list, got {type(values).__name__}")

    names = list(matrix.axes.keys())
    combos: List[Binding] = []
    if names:
        for values in itertools.product(*(matrix.axes[n] for n in names)):
            combos.append(dict(zip(names, values)))

    combos = [c for c in combos if not any(_matches(c, ex) for ex in matrix.exclude)]

    base_count = len(combos)
    for entry in matrix.include:
        axis_part = {k: v for k, v in entry.items() if k in matrix.axes}
        extra = {k: v for k, v in entry.items() if k not in matrix.axes}
        merged = False
        if axis_part and extra:
            for combo in combos[:base_count]:
                if _matches(combo, axis_part):
                    # extra keys must not overwrite what an earlier include added
                    if any(k in combo and combo[k] != v for k, v in extra.items()):
                        continue
                    combo.update(extra)
                    merged = True
        if not merged:
            combos.append(dict(entry))

    unique: List[Binding] = []
    for c in combos:
        if c not in unique:
            unique.append(c)

    if not unique:
        raise WorkflowError("Matrix expands to zero combinations")
    return unique


def _format(template: str, binding: Mapping[str, Any], job: str) -> str:
    try:
        return template.format(**binding)
    except KeyError as e:
        raise WorkflowError(f"Job '{job}' template {template!r} refers to unknown axis {e}") from None


def platform_tag_for(spec: JobSpec, binding: Mapping[str, Any]) -> Optional[str]:
    if spec.artifact_tag:
        return _format(spec.artifact_tag, binding, spec.name)
    if binding:
        return "-".join(str(v) for v in binding.values())
    return None


def expand_job(spec: JobSpec) -> List[JobInstance]:
    """One JobInstance per matrix binding (a single instance when there is no matrix)."""
    if spec.matrix is None:
        name = _format(spec.display_name, {}, spec.name) if spec.display_name else spec.name
        return [JobInstance(spec_name=spec.name, display_name=name, platform_tag=platform_tag_for(spec, {}))]

    instances: List[JobInstance] = []
    for idx, binding in enumerate(expand(spec.matrix)):
        if spec.display_name:
            label = _format(spec.display_name, binding, spec.name)
        else:
            label = f"{spec.name} ({', '.join(f'{k}={v}' for k, v in binding.items())})"
        instances.append(
            JobInstance(
                spec_name=spec.name,
                index=idx,
                axis_binding=dict(binding),
                display_name=label,
                platform_tag=platform_tag_for(spec, binding),
            )
        )
    return instances
