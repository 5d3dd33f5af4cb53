"""
Reconciliation: reduce the raw record log to one record per (identity, group).

The winner for a key is the maximum of its usable records under

    (parsed timestamp, status priority, canonical JSON of the record)

which is a total order, so the reduction is idempotent, commutative and
associative: duplicated, reordered or partially lost appends from any number
of sessions converge on the same winner once they are visible.

A record is unusable (excluded before the reduction, never a tie-break
participant) when its timestamp does not parse, its status is unknown, any
score is non-numeric, or it carries no score at all. Given a rubric, only
its criteria count as scores and each must lie within [0, max_score].
"""
from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple

from .config import Rubric
from .records import EDITING, EvaluationRecord, Status

logger = logging.getLogger(__name__)

Key = Tuple[str, int]

_NUMERIC = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
_FRACTION = re.compile(r"\.(\d+)")

# epoch values above this are taken as milliseconds
_EPOCH_MS_CUTOFF = 1e11


class Candidate(NamedTuple):
    record: EvaluationRecord
    when: datetime
    status: Status
    scores: Dict[str, Optional[float]]
    canonical: str

    @property
    def sort_key(self):
        return (self.when, self.status.priority, self.canonical)


@dataclass(frozen=True)
class ReconciledState:
    identity_id: str
    group_id: int
    status: Status
    best_record: Optional[EvaluationRecord] = None
    scores: Dict[str, Optional[float]] = field(default_factory=dict)
    timestamp: Optional[datetime] = None

    @property
    def editing(self) -> bool:
        return self.best_record is not None and self.best_record.editing_flag == EDITING

    @property
    def filled(self) -> int:
        return sum(1 for v in self.scores.values() if v is not None)

    @property
    def total(self) -> float:
        return float(sum(v for v in self.scores.values() if v is not None))

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "identityId": self.identity_id,
            "groupId": self.group_id,
            "status": self.status.value,
            "editingFlag": self.best_record.editing_flag if self.best_record else "",
            "total": self.total,
        }
        if self.best_record is not None:
            out["record"] = self.best_record.to_dict()
        return out


# -----------------------
# Parsing
# -----------------------
def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO 8601 string or epoch seconds/milliseconds -> aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        if _NUMERIC.match(s):
            value = float(s)
        else:
            if s.endswith("Z"):
                s = s[:-1] + "+00:00"
            # fromisoformat on 3.10 only takes 3 or 6 fraction digits
            s = _FRACTION.sub(lambda m: "." + (m.group(1) + "000000")[:6], s, count=1)
            try:
                dt = datetime.fromisoformat(s)
            except ValueError:
                return None
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.astimezone(timezone.utc)
    if isinstance(value, (int, float)):
        v = float(value)
        if not math.isfinite(v):
            return None
        if abs(v) > _EPOCH_MS_CUTOFF:
            v /= 1000.0
        try:
            return datetime.fromtimestamp(v, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    return None


class MalformedScore(ValueError):
    pass


def parse_score(value: Any) -> Optional[float]:
    """None/"" is an empty score; anything non-numeric raises MalformedScore."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise MalformedScore(value)
    if isinstance(value, (int, float)):
        v = float(value)
    elif isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        if not _NUMERIC.match(s):
            raise MalformedScore(value)
        v = float(s)
    else:
        raise MalformedScore(value)
    if not math.isfinite(v):
        raise MalformedScore(value)
    return v


def parse_scores(scores: Any) -> Dict[str, Optional[float]]:
    if not isinstance(scores, dict):
        raise MalformedScore(scores)
    return {str(k): parse_score(v) for k, v in scores.items()}


def rubric_scores(scores: Dict[str, Optional[float]], rubric: Rubric) -> Dict[str, Optional[float]]:
    """Rubric criteria only, in rubric order. A value outside [0, max_score] raises MalformedScore."""
    out: Dict[str, Optional[float]] = {}
    for c in rubric.criteria:
        v = scores.get(c.id)
        if v is not None and not 0 <= v <= c.max_score:
            raise MalformedScore(v)
        out[c.id] = v
    return out


def canonical(record: EvaluationRecord) -> str:
    return json.dumps(record.to_dict(), sort_keys=True, ensure_ascii=False, default=str)


def candidate(record: EvaluationRecord, rubric: Optional[Rubric] = None) -> Optional[Candidate]:
    """
    Return the record as a merge candidate, or None if it cannot compete.
    With a rubric, keys outside it are dropped and out-of-range scores exclude the record.
    """
    if not record.identity_id:
        return None
    when = parse_timestamp(record.timestamp)
    if when is None:
        logger.debug("Excluding record %s: bad timestamp %r", record.key, record.timestamp)
        return None
    status = Status.parse(record.status)
    if status is None or status is Status.NOT_STARTED:
        logger.debug("Excluding record %s: bad status %r", record.key, record.status)
        return None
    try:
        scores = parse_scores(record.scores)
        if rubric is not None:
            scores = rubric_scores(scores, rubric)
    except MalformedScore:
        logger.debug("Excluding record %s: non-numeric or out-of-range score", record.key)
        return None
    if all(v is None for v in scores.values()):
        return None
    return Candidate(record, when, status, scores, canonical(record))


# -----------------------
# Merge
# -----------------------
def merge(a: Optional[Candidate], b: Optional[Candidate]) -> Optional[Candidate]:
    """Pairwise winner. Later timestamp, then status priority, then canonical order."""
    if a is None:
        return b
    if b is None:
        return a
    return b if b.sort_key > a.sort_key else a


def reconcile(records: Iterable[EvaluationRecord], rubric: Optional[Rubric] = None) -> Dict[Key, ReconciledState]:
    best: Dict[Key, Candidate] = {}
    for record in records:
        c = candidate(record, rubric)
        if c is None:
            continue
        best[record.key] = merge(best.get(record.key), c)

    return {
        key: ReconciledState(
            identity_id=key[0],
            group_id=key[1],
            status=c.status,
            best_record=c.record,
            scores=c.scores,
            timestamp=c.when,
        )
        for key, c in best.items()
    }


def states_for(
    identity_id: str,
    group_ids: Iterable[int],
    reconciled: Dict[Key, ReconciledState],
) -> List[ReconciledState]:
    """One state per group, `not_started` where nothing usable exists."""
    out = []
    for gid in group_ids:
        state = reconciled.get((identity_id, gid))
        if state is None:
            state = ReconciledState(identity_id=identity_id, group_id=gid, status=Status.NOT_STARTED)
        out.append(state)
    return out


def sorted_states(reconciled: Dict[Key, ReconciledState]) -> List[ReconciledState]:
    return [reconciled[k] for k in sorted(reconciled)]
