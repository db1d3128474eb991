from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

_correlation_id: ContextVar[str | None] = ContextVar("stageflow_correlation_id", default=None)
_workflow_depth: ContextVar[int | None] = ContextVar("stageflow_workflow_depth", default=None)


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def get_workflow_depth() -> int | None:
    """Depth of the automation chain the caller runs in; None outside automation."""
    return _workflow_depth.get()


@contextmanager
def correlation_scope(correlation_id: str | None) -> Iterator[str | None]:
    token = _correlation_id.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id.reset(token)


@contextmanager
def workflow_depth_scope(depth: int | None) -> Iterator[int | None]:
    token = _workflow_depth.set(depth)
    try:
        yield depth
    finally:
        _workflow_depth.reset(token)


@contextmanager
def next_workflow_depth() -> Iterator[int]:
    """Bind one level deeper than the current chain, for events a run emits."""
    with workflow_depth_scope((get_workflow_depth() or 0) + 1) as depth:
        yield depth or 0
