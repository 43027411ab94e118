"""Update procedures and their coordination."""

from typing import List, Sequence

from ..errors import UsageError
from ..models import ExecutionContext, Plan
from .procedure import Procedure
from .update_agent_v1 import UpdateAgentV1


def coordinate_procedures(plan: Plan) -> List[Procedure]:
    """Build the procedures that carry out ``plan``, in plan order."""
    unsupported = [change.service for change in plan.changes if not change.is_agent]
    if unsupported:
        raise UsageError(f"no update procedure available for: {', '.join(unsupported)}")
    if not plan.changes:
        return []
    return [UpdateAgentV1(plan.changes)]


def run_procedures(procedures: Sequence[Procedure], ctx: ExecutionContext) -> None:
    """Execute procedures one after the other, stopping at the first failure."""
    for procedure in procedures:
        ctx.log.debug("Executing procedure %s", type(procedure).__name__)
        procedure.execute(ctx)


__all__ = ["Procedure", "UpdateAgentV1", "coordinate_procedures", "run_procedures"]
