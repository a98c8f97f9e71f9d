"""Append-only record of approval decisions."""

from typing import Iterator, List, Optional

from backend.core.models import ApprovalAction, AuditEntry


class AuditTrail:
    """In-memory audit trail for one approval item, oldest entry first."""

    def __init__(self, workflow_id: str, entries: Optional[List[AuditEntry]] = None):
        self.workflow_id = workflow_id
        self._entries: List[AuditEntry] = list(entries or [])

    def record(self, entry: AuditEntry) -> AuditEntry:
        if entry.workflow_id != self.workflow_id:
            raise ValueError(
                f"Audit entry for workflow '{entry.workflow_id}' cannot be added to '{self.workflow_id}'"
            )
        self._entries.append(entry)
        return entry

    @property
    def entries(self) -> List[AuditEntry]:
        return list(self._entries)

    @property
    def last(self) -> Optional[AuditEntry]:
        return self._entries[-1] if self._entries else None

    def by_action(self, action: ApprovalAction) -> List[AuditEntry]:
        return [e for e in self._entries if e.action == action]

    def by_actor(self, actor: Optional[str]) -> List[AuditEntry]:
        return [e for e in self._entries if e.actor == actor]

    def __iter__(self) -> Iterator[AuditEntry]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)
