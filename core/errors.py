"""
core/errors.py
--------------
Exception types shared by the pipeline components.

Validation-type errors are raised synchronously to the caller and are never
retried.  Staleness is *not* an exception: the affected object is moved to a
terminal state with a reason string instead.
"""
from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class SignalRejected(PipelineError):
    """Signal refused at enqueue time (HOLD or sub-threshold confidence)."""


class SignalStateError(PipelineError):
    """Attempt to move a signal out of a terminal state."""


class AgentNotFound(PipelineError):
    """Agent missing from the document store or inactive."""


class PreviewNotFound(PipelineError):
    """No preview stored under the requested id."""


class VenueError(PipelineError):
    """Transport or API failure reported by the exchange venue."""

    def __init__(self, reason: str, status: Optional[int] = None) -> None:
        super().__init__(reason)
        self.status = status


class ExecutionError(PipelineError):
    """Order submission failed; a rejected trade record has been written."""

    def __init__(self, reason: str, trade_id: Optional[str] = None) -> None:
        super().__init__(reason)
        self.trade_id = trade_id
