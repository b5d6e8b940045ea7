"""
Per-operation state machine used to reject overlapping calls.
"""
from contextlib import asynccontextmanager
from enum import Enum

from checkout_core.exceptions import OperationInProgressError


class OperationState(str, Enum):
    IDLE = "idle"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Operation:
    """
    Tracks one named operation of a component.

    A second ``run()`` while the first is still in flight raises
    OperationInProgressError before any work starts. The check and the
    transition happen without awaiting, so they cannot interleave on the
    event loop.
    """

    def __init__(self, name: str):
        self.name = name
        self.state = OperationState.IDLE

    @property
    def in_flight(self) -> bool:
        return self.state is OperationState.IN_FLIGHT

    def mark_failed(self) -> None:
        """Record a failure that the caller handled inside ``run()``"""
        if self.in_flight:
            self.state = OperationState.FAILED

    @asynccontextmanager
    async def run(self):
        if self.in_flight:
            raise OperationInProgressError(self.name)

        self.state = OperationState.IN_FLIGHT
        try:
            yield self
        except BaseException:
            self.state = OperationState.FAILED
            raise
        if self.in_flight:
            self.state = OperationState.SUCCEEDED
