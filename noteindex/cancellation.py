"""Cooperative cancellation threaded explicitly through long-running passes."""

from __future__ import annotations

from typing import Optional


class OperationCancelled(Exception):
    """Raised by :meth:`CancellationContext.check` once cancellation is requested."""


class CancellationContext:
    """A cancel flag that loops poll at unit-of-work boundaries.

    Children observe their parent, so cancelling a sync pass also stops the
    stale check and directory scan it started.
    """

    def __init__(self, parent: Optional["CancellationContext"] = None):
        self._parent = parent
        self._cancelled = False
        self.reason: Optional[str] = None

    def cancel(self, reason: str | None = None) -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason

    @property
    def cancelled(self) -> bool:
        if self._cancelled:
            return True
        return self._parent is not None and self._parent.cancelled

    def check(self) -> None:
        if self.cancelled:
            raise OperationCancelled(self.reason or "operation cancelled")

    def child(self) -> "CancellationContext":
        return CancellationContext(parent=self)

    def __repr__(self) -> str:
        return f"CancellationContext(cancelled={self.cancelled})"


def is_cancelled(ctx: Optional[CancellationContext]) -> bool:
    return ctx is not None and ctx.cancelled
