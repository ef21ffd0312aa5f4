"""
Responsible resolution for assignment nodes
"""
import logging
from typing import List, Optional, Sequence

from ..exceptions import NoEligibleAssigneeError, UnassignedTargetError
from ..models.flow import AssignData, AssignMode
from ..models.lead import WorkspaceMember
from ..storage.repository import RotationCursorRepository


logger = logging.getLogger(__name__)


def next_in_rotation(candidates: Sequence[str], cursor: Optional[str]) -> str:
    """Member after ``cursor``, wrapping; the first one when the cursor is unknown"""
    if cursor in candidates:
        return candidates[(candidates.index(cursor) + 1) % len(candidates)]
    return candidates[0]


class AssignmentResolver:
    """Resolves specific and round-robin assignment to a concrete user id"""

    def __init__(self, rotation: RotationCursorRepository):
        self.rotation = rotation

    def eligible_members(self, data: AssignData, members: Sequence[WorkspaceMember]) -> List[str]:
        assignable = [member.user_id for member in members if member.is_assignable]
        if data.users:
            return [user_id for user_id in data.users if user_id in assignable]
        return assignable

    async def resolve(
        self,
        data: AssignData,
        members: Sequence[WorkspaceMember],
        workspace_id: str,
        key: str,
    ) -> str:
        """
        Args:
            data: assignment node data
            members: current workspace members, in rotation order
            workspace_id: scope of the rotation cursor
            key: step idempotency key; a retried step gets the same member

        Raises:
            UnassignedTargetError: specific mode without a current member
            NoEligibleAssigneeError: round-robin with nobody to rotate through
        """
        if data.mode == AssignMode.SPECIFIC:
            if not data.user_id or data.user_id not in {m.user_id for m in members}:
                raise UnassignedTargetError(data.user_id, workspace_id)
            return data.user_id

        candidates = self.eligible_members(data, members)
        if not candidates:
            raise NoEligibleAssigneeError(workspace_id)

        chosen = await self.rotation.rotate(
            workspace_id, key, lambda cursor: next_in_rotation(candidates, cursor)
        )
        logger.debug(f"Round-robin in workspace {workspace_id} picked {chosen}")
        return chosen

    async def forget(self, key: str):
        """Release the rotation pick of a step once the step is committed"""
        await self.rotation.forget(key)
