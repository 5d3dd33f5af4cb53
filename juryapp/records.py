"""
Evaluation records and the append-only record log.

A record is one snapshot of one juror's scores for one group. Records are
immutable once appended; the log only ever grows. What a juror "currently"
has for a group is decided on read by juryapp.reconcile.
"""
from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol

from .db import db

logger = logging.getLogger(__name__)

EDITING = "editing"


class Status(str, enum.Enum):
    """Submission lifecycle, in increasing completeness order."""
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    GROUP_SUBMITTED = "group_submitted"
    ALL_SUBMITTED = "all_submitted"

    @property
    def priority(self) -> int:
        return _PRIORITY[self]

    @classmethod
    def parse(cls, value: Any) -> Optional["Status"]:
        try:
            return cls(str(value).strip())
        except ValueError:
            return None


_PRIORITY = {
    Status.NOT_STARTED: 0,
    Status.IN_PROGRESS: 1,
    Status.GROUP_SUBMITTED: 2,
    Status.ALL_SUBMITTED: 3,
}

FINAL_STATUSES = (Status.GROUP_SUBMITTED, Status.ALL_SUBMITTED)


@dataclass(frozen=True)
class EvaluationRecord:
    """
    One append. Fields hold what the writer sent, unvalidated:
    timestamp may be an ISO string or epoch seconds, scores may contain
    junk. Reconciliation decides whether a record is usable.
    """
    identity_id: str
    group_id: int
    timestamp: Any
    scores: Any = field(default_factory=dict)
    comment: str = ""
    status: str = Status.IN_PROGRESS.value
    editing_flag: str = ""
    display_name: str = ""
    organization: str = ""

    @property
    def key(self):
        return (self.identity_id, self.group_id)

    def with_changes(self, **changes) -> "EvaluationRecord":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identityId": self.identity_id,
            "groupId": self.group_id,
            "timestamp": self.timestamp,
            "criterionScores": self.scores,
            "comment": self.comment,
            "status": self.status,
            "editingFlag": self.editing_flag,
            "displayName": self.display_name,
            "organization": self.organization,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "EvaluationRecord":
        return EvaluationRecord(
            identity_id=str(data["identityId"]),
            group_id=int(data["groupId"]),
            timestamp=data.get("timestamp"),
            scores=data.get("criterionScores") or {},
            comment=str(data.get("comment") or ""),
            status=str(data.get("status") or ""),
            editing_flag=str(data.get("editingFlag") or ""),
            display_name=str(data.get("displayName") or ""),
            organization=str(data.get("organization") or ""),
        )


@dataclass(frozen=True)
class RecordFilter:
    """Query filter. since/until bound the server-side append time (ISO)."""
    identity_id: Optional[str] = None
    group_id: Optional[int] = None
    since: Optional[str] = None
    until: Optional[str] = None


ALL = RecordFilter()


class RecordLog(Protocol):
    def append(self, records: Iterable[EvaluationRecord]) -> int: ...

    def query(self, flt: RecordFilter = ALL) -> List[EvaluationRecord]: ...


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


class SqliteRecordLog:
    """Append/query over the `evaluations` table. No update, no delete."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    def append(self, records: Iterable[EvaluationRecord]) -> int:
        now = _utcnow_iso()
        rows = [
            (
                r.identity_id,
                int(r.group_id),
                None if r.timestamp is None else str(r.timestamp),
                json.dumps(r.scores, ensure_ascii=False),
                r.comment or "",
                r.status,
                r.editing_flag or "",
                r.display_name or "",
                r.organization or "",
                now,
            )
            for r in records
        ]
        if not rows:
            return 0
        with db(self.db_path) as conn:
            conn.executemany(
                """
                INSERT INTO evaluations(identity_id, group_id, timestamp, scores, comment, status,
                                        editing_flag, display_name, organization, appended_at)
                VALUES(?,?,?,?,?,?,?,?,?,?)
                """,
                rows,
            )
        logger.info("Appended %d record(s)", len(rows))
        return len(rows)

    def query(self, flt: RecordFilter = ALL) -> List[EvaluationRecord]:
        clauses: List[str] = []
        params: List[Any] = []
        if flt.identity_id is not None:
            clauses.append("identity_id=?")
            params.append(flt.identity_id)
        if flt.group_id is not None:
            clauses.append("group_id=?")
            params.append(int(flt.group_id))
        if flt.since is not None:
            clauses.append("appended_at>=?")
            params.append(flt.since)
        if flt.until is not None:
            clauses.append("appended_at<?")
            params.append(flt.until)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with db(self.db_path) as conn:
            rows = conn.execute(f"SELECT * FROM evaluations {where} ORDER BY seq", params).fetchall()
        return [_row_to_record(r) for r in rows]


def _row_to_record(row) -> EvaluationRecord:
    raw_scores = row["scores"]
    try:
        scores = json.loads(raw_scores) if raw_scores else {}
    except ValueError:
        # hand-edited rows keep their raw text; reconciliation rejects them
        scores = raw_scores
    return EvaluationRecord(
        identity_id=row["identity_id"],
        group_id=row["group_id"],
        timestamp=row["timestamp"],
        scores=scores,
        comment=row["comment"] or "",
        status=row["status"] or "",
        editing_flag=row["editing_flag"] or "",
        display_name=row["display_name"] or "",
        organization=row["organization"] or "",
    )
