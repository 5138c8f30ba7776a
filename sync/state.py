"""In-memory working copy shared by the coordinator and the reconciler.

Copyright (c) Bryn Gwalad 2025
"""

from dataclasses import dataclass, field
from typing import List, Optional

from api.models import AuditLog, Connectivity, Equipment


@dataclass(frozen=True)
class Snapshot:
    items: List[Equipment]
    logs: List[AuditLog]


@dataclass
class InventoryState:
    items: List[Equipment] = field(default_factory=list)
    logs: List[AuditLog] = field(default_factory=list)
    connectivity: Connectivity = Connectivity.DEGRADED

    def snapshot(self) -> Snapshot:
        # Shallow copies are enough: models are replaced, never edited in place.
        return Snapshot(items=list(self.items), logs=list(self.logs))

    def restore(self, snap: Snapshot) -> None:
        self.items = list(snap.items)
        self.logs = list(snap.logs)

    def find(self, item_id: str) -> Optional[Equipment]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None
