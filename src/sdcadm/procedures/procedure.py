"""Base class for update procedures."""

from abc import ABC, abstractmethod

from ..models import ExecutionContext


class Procedure(ABC):
    """
    A unit of update work built from planned changes.

    ``summarize`` describes the change for operator confirmation without
    touching any remote API. ``execute`` performs it, returning on success
    and raising a single SdcAdmError (often a MultiError) on failure.
    """

    @abstractmethod
    def summarize(self) -> str:
        """Return a human readable description of what this procedure will do."""

    @abstractmethod
    def execute(self, ctx: ExecutionContext) -> None:
        """Perform the update described by ``summarize``."""
