"""
Statistics and export over approval audit entries.

Works on any list of AuditEntry rows, typically ``repository.entries()``.
Processing time runs from an item's ``created`` entry to its latest
approve or reject decision.
"""

import csv
import io
import json
from collections import Counter
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from backend.core.logging import get_logger
from backend.core.models import ApprovalAction, AuditEntry

logger = get_logger(__name__)

DECISIONS = (ApprovalAction.APPROVE, ApprovalAction.REJECT)
SYSTEM_ACTOR = "system"

CSV_FIELDS = [
    "id",
    "workflow_id",
    "timestamp",
    "action",
    "actor",
    "previous_status",
    "new_status",
    "comment",
]


class ActorStatistics(BaseModel):
    actor: str
    processed: int = 0
    approved: int = 0
    rejected: int = 0
    approval_rate: float = 0.0  # percent of decisions that were approvals


class ApprovalStatistics(BaseModel):
    total_entries: int = 0
    total_processed: int = 0
    by_action: Dict[str, int] = Field(default_factory=dict)
    by_actor: Dict[str, int] = Field(default_factory=dict)
    average_processing_minutes: float = 0.0
    actor_performance: List[ActorStatistics] = Field(default_factory=list)


def _window(entries: Iterable[AuditEntry], since: Optional[datetime], until: Optional[datetime]) -> List[AuditEntry]:
    return [
        e for e in entries
        if (since is None or e.timestamp >= since) and (until is None or e.timestamp <= until)
    ]


def _average_processing_minutes(entries: List[AuditEntry]) -> float:
    created: Dict[str, datetime] = {}
    decided: Dict[str, datetime] = {}
    for entry in sorted(entries, key=lambda e: e.timestamp):
        if entry.action == ApprovalAction.CREATED:
            created[entry.workflow_id] = entry.timestamp
        elif entry.action in DECISIONS and entry.workflow_id in created:
            decided[entry.workflow_id] = entry.timestamp

    if not decided:
        return 0.0
    total = sum((decided[wf] - created[wf]).total_seconds() for wf in decided)
    return total / (len(decided) * 60)


def _actor_performance(decisions: List[AuditEntry]) -> List[ActorStatistics]:
    stats: Dict[str, ActorStatistics] = {}
    for entry in decisions:
        actor = entry.actor or SYSTEM_ACTOR
        row = stats.setdefault(actor, ActorStatistics(actor=actor))
        row.processed += 1
        if entry.action == ApprovalAction.APPROVE:
            row.approved += 1
        else:
            row.rejected += 1

    for row in stats.values():
        row.approval_rate = row.approved / row.processed * 100
    return sorted(stats.values(), key=lambda r: (-r.processed, r.actor))


def calculate_statistics(
    entries: Iterable[AuditEntry],
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> ApprovalStatistics:
    """
    Summarize approval activity.

    Args:
        entries: Audit entries, any order, any number of workflows
        since: Ignore entries before this instant
        until: Ignore entries after this instant

    Returns:
        Counts per action and actor, decision count, mean processing time
        in minutes and per-actor approval rates
    """
    entries = _window(entries, since, until)
    decisions = [e for e in entries if e.action in DECISIONS]

    return ApprovalStatistics(
        total_entries=len(entries),
        total_processed=len(decisions),
        by_action=dict(Counter(e.action.value for e in entries)),
        by_actor=dict(Counter(e.actor or SYSTEM_ACTOR for e in entries)),
        average_processing_minutes=_average_processing_minutes(entries),
        actor_performance=_actor_performance(decisions),
    )


def export_history(entries: Iterable[AuditEntry], format: str = "json") -> str:
    """Export audit entries as JSON (with statistics) or CSV (one row per entry)."""
    entries = sorted(entries, key=lambda e: e.timestamp)

    if format == "csv":
        output = io.StringIO()
        writer = csv.DictWriter(output, fieldnames=CSV_FIELDS)
        writer.writeheader()
        for entry in entries:
            row = entry.model_dump(mode="json", include=set(CSV_FIELDS))
            writer.writerow({name: row.get(name) or "" for name in CSV_FIELDS})
        logger.info("approval_history_exported", format=format, entries=len(entries))
        return output.getvalue()

    if format == "json":
        payload = {
            "history": [entry.model_dump(mode="json") for entry in entries],
            "statistics": calculate_statistics(entries).model_dump(mode="json"),
            "export_date": datetime.now(timezone.utc).isoformat(),
        }
        logger.info("approval_history_exported", format=format, entries=len(entries))
        return json.dumps(payload, indent=2, ensure_ascii=False)

    raise ValueError(f"Unsupported export format: {format}")
