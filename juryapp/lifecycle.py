"""
Submission lifecycle.

    not_started -> in_progress -> group_submitted -> all_submitted

The writer decides the status it stamps on each append (classify/stamp,
finalize). The server only protects finalized work (gate) and opens edit
windows (reopen). editing_flag is orthogonal to status: it says "open for
revision", status says "how complete was the last write".
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .config import Rubric
from .db import db
from .errors import IncompleteEvaluation
from .identity import Identity
from .reconcile import (
    Key,
    MalformedScore,
    ReconciledState,
    parse_score,
    parse_scores,
    reconcile,
    rubric_scores,
    sorted_states,
)
from .records import EDITING, EvaluationRecord, RecordFilter, RecordLog, Status

logger = logging.getLogger(__name__)

Sheet = Mapping[str, object]  # criterion_id -> score or empty


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    return dt.isoformat(timespec="milliseconds")


# -----------------------
# Transitions
# -----------------------
# Forward moves the writer may stamp without any reopen.
_ALLOWED: Dict[Status, Tuple[Status, ...]] = {
    Status.NOT_STARTED: (Status.IN_PROGRESS, Status.GROUP_SUBMITTED, Status.ALL_SUBMITTED),
    Status.IN_PROGRESS: (Status.IN_PROGRESS, Status.GROUP_SUBMITTED, Status.ALL_SUBMITTED),
    Status.GROUP_SUBMITTED: (Status.IN_PROGRESS, Status.GROUP_SUBMITTED, Status.ALL_SUBMITTED),
    Status.ALL_SUBMITTED: (Status.ALL_SUBMITTED,),
}


def can_transition(current: Status, new: Status, reopened: bool = False) -> bool:
    """all_submitted only moves down inside a reopen window."""
    if reopened and current is Status.ALL_SUBMITTED:
        return True
    return new in _ALLOWED[current]


def _is_filled(value) -> bool:
    try:
        return parse_score(value) is not None
    except MalformedScore:
        return False


def missing_criteria(sheet: Optional[Sheet], rubric: Rubric) -> List[str]:
    sheet = sheet or {}
    return [cid for cid in rubric.criterion_ids if not _is_filled(sheet.get(cid))]


def classify(sheet: Optional[Sheet], rubric: Rubric) -> Status:
    missing = missing_criteria(sheet, rubric)
    if len(missing) == len(rubric.criteria):
        return Status.NOT_STARTED
    if not missing:
        return Status.GROUP_SUBMITTED
    return Status.IN_PROGRESS


def _record(identity: Identity, group_id: int, sheet: Optional[Sheet], comment: str,
            status: Status, rubric: Rubric, now: datetime) -> EvaluationRecord:
    sheet = sheet or {}
    scores = {cid: (sheet.get(cid) if _is_filled(sheet.get(cid)) else None) for cid in rubric.criterion_ids}
    return EvaluationRecord(
        identity_id=identity.id,
        group_id=group_id,
        timestamp=iso(now),
        scores=scores,
        comment=comment or "",
        status=status.value,
        display_name=identity.display_name,
        organization=identity.organization,
    )


def stamp(identity: Identity, group_id: int, sheet: Optional[Sheet], comment: str,
          rubric: Rubric, now: Optional[datetime] = None) -> Optional[EvaluationRecord]:
    """Record for the next write of one group, or None if nothing is filled yet."""
    status = classify(sheet, rubric)
    if status is Status.NOT_STARTED:
        return None
    return _record(identity, group_id, sheet, comment, status, rubric, now or utcnow())


def stamp_all(identity: Identity, sheets: Mapping[int, Sheet], comments: Mapping[int, str],
              rubric: Rubric, now: Optional[datetime] = None) -> List[EvaluationRecord]:
    now = now or utcnow()
    out = []
    for gid in rubric.group_ids:
        r = stamp(identity, gid, sheets.get(gid), comments.get(gid, ""), rubric, now)
        if r is not None:
            out.append(r)
    return out


def finalize(identity: Identity, sheets: Mapping[int, Sheet], comments: Mapping[int, str],
             rubric: Rubric, now: Optional[datetime] = None) -> List[EvaluationRecord]:
    """Every group as all_submitted in one batch; refuses while anything is empty."""
    missing = {}
    for gid in rubric.group_ids:
        m = missing_criteria(sheets.get(gid), rubric)
        if m:
            missing[gid] = m
    if missing:
        raise IncompleteEvaluation(missing)

    now = now or utcnow()
    return [
        _record(identity, gid, sheets.get(gid), comments.get(gid, ""), Status.ALL_SUBMITTED, rubric, now)
        for gid in rubric.group_ids
    ]


# -----------------------
# Server side: conform, gate, reopen
# -----------------------
def conform(
    incoming: Iterable[EvaluationRecord],
    rubric: Rubric,
) -> Tuple[List[EvaluationRecord], List[EvaluationRecord]]:
    """
    Fit writer records to the rubric. Returns (usable, rejected).

    Unknown groups, non-numeric or out-of-range scores, and records with no
    rubric criterion filled are rejected. Keys outside the rubric are dropped.
    """
    known_groups = set(rubric.group_ids)
    usable, rejected = [], []
    for r in incoming:
        if r.group_id not in known_groups:
            rejected.append(r)
            continue
        try:
            scores = rubric_scores(parse_scores(r.scores), rubric)
        except MalformedScore:
            rejected.append(r)
            continue
        if all(v is None for v in scores.values()):
            rejected.append(r)
            continue
        usable.append(r.with_changes(scores={cid: r.scores.get(cid) for cid in rubric.criterion_ids}))
    return usable, rejected


def gate(
    incoming: Iterable[EvaluationRecord],
    current: Mapping[Key, ReconciledState],
    reopened: bool,
) -> Tuple[List[EvaluationRecord], List[EvaluationRecord]]:
    """
    Decide what actually gets appended. Returns (accepted, skipped).

    Last record per key in the batch wins. A finalized key refuses lower
    statuses outside a reopen window. editing_flag is assigned here, never
    taken from the writer.
    """
    latest: Dict[Key, EvaluationRecord] = {}
    for r in incoming:
        latest[r.key] = r

    accepted, skipped = [], []
    for key, r in latest.items():
        new_status = Status.parse(r.status)
        state = current.get(key)
        cur_status = state.status if state is not None else Status.NOT_STARTED

        if new_status is not None and not can_transition(cur_status, new_status, reopened):
            skipped.append(r)
            continue

        if new_status is Status.ALL_SUBMITTED:
            flag = ""
        elif reopened:
            flag = EDITING
        elif state is not None and state.best_record is not None:
            flag = state.best_record.editing_flag
        else:
            flag = ""
        accepted.append(r.with_changes(editing_flag=flag))

    return accepted, skipped


class ReopenWindows:
    """Per-identity reopen timestamps (`reopen_marks` table)."""

    def __init__(self, db_path: str, minutes: int, clock: Callable[[], datetime] = utcnow) -> None:
        self.db_path = db_path
        self.window = timedelta(minutes=minutes)
        self.clock = clock

    def open(self, identity_id: str) -> None:
        with db(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO reopen_marks(identity_id, reopened_at) VALUES(?,?)
                ON CONFLICT(identity_id) DO UPDATE SET reopened_at=excluded.reopened_at
                """,
                (identity_id, iso(self.clock())),
            )

    def is_active(self, identity_id: str) -> bool:
        with db(self.db_path) as conn:
            row = conn.execute(
                "SELECT reopened_at FROM reopen_marks WHERE identity_id=?", (identity_id,)
            ).fetchone()
        if not row:
            return False
        opened = datetime.fromisoformat(row["reopened_at"])
        return self.clock() - opened <= self.window


REOPEN_STEP = timedelta(milliseconds=1)


def reopen(log: RecordLog, windows: ReopenWindows, identity_id: str,
           rubric: Optional[Rubric] = None) -> int:
    """
    Open an edit window and re-append the identity's current records as
    in_progress + editing. Scores are copied, so the last-known values stay
    readable until the juror overwrites them.

    Each copy is stamped one step after the record it replaces, on the
    writer's clock rather than the server's, so the writer's next edit
    always lands after it.
    """
    windows.open(identity_id)
    states = sorted_states(reconcile(log.query(RecordFilter(identity_id=identity_id)), rubric))
    copies = [
        s.best_record.with_changes(
            timestamp=iso(s.timestamp + REOPEN_STEP),
            status=Status.IN_PROGRESS.value,
            editing_flag=EDITING,
        )
        for s in states
        if s.best_record is not None
    ]
    log.append(copies)
    logger.info("Reopened %s (%d record(s) re-stamped)", identity_id, len(copies))
    return len(copies)
