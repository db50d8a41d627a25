"""
Weighted hierarchical progress.

The work to complete is divided into steps, each claiming a share of its
parent's work. Steps can be subdivided further; progress reported by a leaf is
scaled by every ancestor's weight on its way to the root.
"""

from __future__ import annotations

import threading
import weakref
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class ProgressSnapshot:
    fraction: float
    description: str | None
    complete: bool


ProgressListener = Callable[[ProgressSnapshot], None]


class Step:
    """A share of work in a :class:`ProgressTree`."""

    def __init__(
        self,
        tree: ProgressTree,
        parent: Step | None,
        weight: float,
        description: str | None,
    ) -> None:
        if not 0 <= weight <= 1:
            raise ValueError(f"step weight must be within [0, 1]: {weight}")
        self._tree = tree
        self._parent = weakref.ref(parent) if parent is not None else None
        self.weight = float(weight)
        self._description = description
        self._progress = 0.0
        self._children: list[Step] = []
        self._done = False
        self._failed = False
        self._failed_children = 0

    def __repr__(self) -> str:
        return (
            f"Step(weight={self.weight}, progress={self._progress:.3f}, "
            f"description={self._description!r}, done={self._done})"
        )

    @property
    def parent(self) -> Step | None:
        if self._parent is None:
            return None
        return self._parent()

    @property
    def description(self) -> str | None:
        return self._description

    @property
    def progress_fraction(self) -> float:
        """Progress within this step's own scope, between 0 and 1."""
        return self._progress

    @property
    def children(self) -> tuple[Step, ...]:
        with self._tree._lock:
            return tuple(self._children)

    @property
    def is_done(self) -> bool:
        return self._done

    @property
    def is_failed(self) -> bool:
        return self._failed

    def add_step(self, weight: float, description: str | None = None) -> Step:
        with self._tree._mutation():
            if self._done:
                raise ValueError("cannot add a step to a completed step")
            child = Step(self._tree, self, weight, description)
            self._children.append(child)
        return child

    def describe(self, description: str | None) -> None:
        with self._tree._mutation():
            self._description = description

    def progress(self, delta: float) -> None:
        """Advance by delta, expressed as a fraction of this step's own work."""
        if delta < 0:
            raise ValueError(f"progress delta must not be negative: {delta}")
        with self._tree._mutation():
            self._advance(delta)

    def fail(self) -> None:
        """Mark the step failed; a failed step is released by done() without credit."""
        with self._tree._mutation():
            if not self._done:
                self._failed = True

    def done(self) -> None:
        with self._tree._mutation():
            self._complete()

    def get_active_description(self) -> str | None:
        with self._tree._lock:
            node = self
            while node._children:
                node = node._children[-1]
            return node._description

    def _advance(self, delta: float) -> None:
        if self._done or delta <= 0:
            return
        applied = min(delta, 1.0 - self._progress)
        if applied <= 0:
            return
        self._progress += applied
        parent = self.parent
        if parent is not None:
            parent._advance(applied * self.weight)

    def _abandon(self) -> None:
        self._done = True
        abandoned, self._children = self._children, []
        for child in abandoned:
            child._abandon()

    def _complete(self) -> None:
        if self._done:
            return
        if not self._failed:
            self._advance(1.0 - self._progress)
            self._progress = 1.0
        self._abandon()

        parent = self.parent
        if parent is None or parent._done:
            return
        if self in parent._children:
            parent._children.remove(self)
        if self._failed:
            parent._failed_children += 1
        if not parent._children and parent._failed_children == 0:
            parent._complete()


class ProgressTree:
    """
    Root of a step hierarchy plus the observers refreshed on every change.

    A single re-entrant lock guards the whole tree; listeners are called while
    it is held so they observe snapshots in mutation order.
    """

    def __init__(self, description: str | None = None) -> None:
        self._lock = threading.RLock()
        self._listeners: list[ProgressListener] = []
        self.root = Step(self, None, 1.0, description)

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        with self._lock:
            was_complete = self.root._done
            yield
            if not was_complete:
                snapshot = self._snapshot_locked()
                for listener in list(self._listeners):
                    listener(snapshot)

    def _snapshot_locked(self) -> ProgressSnapshot:
        root = self.root
        if root._done and not root._failed:
            return ProgressSnapshot(fraction=1.0, description=root._description, complete=True)
        return ProgressSnapshot(
            fraction=min(1.0, root._progress),
            description=root.get_active_description(),
            complete=False,
        )

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return self._snapshot_locked()

    @property
    def fraction(self) -> float:
        return self.snapshot().fraction

    @property
    def is_complete(self) -> bool:
        return self.snapshot().complete

    def subscribe(self, listener: ProgressListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: ProgressListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def add_step(self, weight: float, description: str | None = None) -> Step:
        return self.root.add_step(weight, description)

    def get_active_description(self) -> str | None:
        return self.root.get_active_description()

    def complete(self) -> None:
        self.root.done()
