# matrix.py
from __future__ import annotations

import itertools
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import MatrixError
from .model import MatrixBinding, MatrixSpec

logger = logging.getLogger(__name__)


class EmptyAxisPolicy(str, Enum):
    """What to do when a matrix axis has no values."""

    WARN = "warn"
    """Expand to zero instances and log a warning."""

    ERROR = "error"
    """Treat it as a configuration error."""


def check(spec: Optional[MatrixSpec], *, job: str = "") -> None:
    """Structural validation (run once at graph-build time)."""
    if spec is None:
        return
    where = f" in job '{job}'" if job else ""
    for axis, values in spec.axes.items():
        if not isinstance(axis, str) or not axis:
            raise MatrixError(f"Matrix axis names must be non-empty strings{where}, got {axis!r}")
        if not isinstance(values, (list, tuple)):
            raise MatrixError(
                f"Matrix axis '{axis}'{where} must be a list of values, got {type(values).__name__}"
            )
        seen = set()
        for v in values:
            marker = repr(v)
            if marker in seen:
                raise MatrixError(f"Matrix axis '{axis}'{where} repeats value {v!r}")
            seen.add(marker)
    for entry in spec.exclude:
        if not isinstance(entry, dict):
            raise MatrixError(f"Matrix exclude entries{where} must be mappings, got {entry!r}")
        unknown = sorted(set(entry) - set(spec.axes))
        if unknown:
            raise MatrixError(f"Matrix exclude{where} names unknown axes: {unknown}")


def expand(
    spec: Optional[MatrixSpec],
    policy: EmptyAxisPolicy = EmptyAxisPolicy.WARN,
    *,
    job: str = "",
) -> List[MatrixBinding]:
    """
    Expand a matrix into its ordered cross product.

    The first declared axis varies slowest, so for
    {"os": ["linux", "mac"], "py": ["3.10", "3.11"]} the order is
    linux/3.10, linux/3.11, mac/3.10, mac/3.11. Bindings are indexed by
    position after exclusions.
    """
    check(spec, job=job)
    if spec is None or not spec.axes:
        return [MatrixBinding(index=0, values={})]

    empty = [axis for axis, values in spec.axes.items() if len(values) == 0]
    if empty:
        where = f"job '{job}' " if job else ""
        if EmptyAxisPolicy(policy) == EmptyAxisPolicy.ERROR:
            raise MatrixError(f"Matrix of {where}has empty axis {empty}")
        logger.warning("Matrix of %shas empty axis %s; it expands to zero instances", where, empty)
        return []

    axes = list(spec.axes.keys())
    bindings: List[MatrixBinding] = []
    for combo in itertools.product(*(spec.axes[a] for a in axes)):
        values: Dict[str, Any] = dict(zip(axes, combo))
        if any(_matches(values, ex) for ex in spec.exclude):
            continue
        bindings.append(MatrixBinding(index=len(bindings), values=values))
    return bindings


def _matches(values: Dict[str, Any], partial: Dict[str, Any]) -> bool:
    return all(str(values.get(k)) == str(v) for k, v in partial.items())
