"""Delta — the operations that move live state to desired state."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from gitops_kernel.models.resource import ResourceKey


class DeltaAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class DeltaOperation(BaseModel):
    """A single create/update/delete against one resource identity."""

    action: DeltaAction
    key: ResourceKey
    desired: Optional[dict] = None          # None for deletes
    live_resource_version: str = ""         # Version the update was computed against
    changed_fields: List[str] = []          # Dotted paths, updates only


class Delta(BaseModel):
    """Computed fresh on every pass; never persisted."""

    environment: str
    operations: List[DeltaOperation] = []
    orphans: List[ResourceKey] = []         # Managed live-only resources kept because prune is off

    @property
    def is_empty(self) -> bool:
        return not self.operations

    def by_action(self, action: DeltaAction) -> List[DeltaOperation]:
        return [op for op in self.operations if op.action == action]

    def summary(self) -> str:
        counts = {a: len(self.by_action(a)) for a in DeltaAction}
        return (
            f"{counts[DeltaAction.CREATE]} create, "
            f"{counts[DeltaAction.UPDATE]} update, "
            f"{counts[DeltaAction.DELETE]} delete"
        )
