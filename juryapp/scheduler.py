"""
Client write scheduler.

Every timer is checked from poll(), driven either by run() or directly by
the caller. run() polls in a worker thread so a slow append never stalls
the event loop; an edit made meanwhile re-arms the debounce and is picked
up by the next poll. Edits re-arm a short debounce so a burst of
keystrokes becomes one append. Independently, a periodic sync re-appends the
whole local state so lost appends heal without any retry logic.
"""
from __future__ import annotations

import asyncio
import logging
import math
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from . import lifecycle
from .config import Rubric
from .identity import Identity
from .records import EvaluationRecord, Status

logger = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 0.35
SYNC_INTERVAL_SECONDS = 30.0
# re-append delay after a reopen, so the edited rows land after the
# server's reopen copies
EDITING_ROWS_DELAY = 1.5


def clamp_score(value: Any, max_score: float) -> Optional[float]:
    """None/"" clears; junk becomes 0; numbers are clamped to [0, max_score]."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        v = float(value)
    except (TypeError, ValueError):
        v = 0.0
    if not math.isfinite(v):
        v = 0.0
    v = min(max(v, 0.0), float(max_score))
    return int(v) if v.is_integer() else v


class WriteScheduler:
    def __init__(
        self,
        client,
        identity: Identity,
        rubric: Rubric,
        clock: Callable[[], float] = time.monotonic,
        wallclock: Callable[[], datetime] = lifecycle.utcnow,
        debounce_seconds: float = DEBOUNCE_SECONDS,
        sync_interval_seconds: float = SYNC_INTERVAL_SECONDS,
        editing_rows_delay: float = EDITING_ROWS_DELAY,
    ) -> None:
        self.client = client
        self.identity = identity
        self.rubric = rubric
        self.clock = clock
        self.wallclock = wallclock
        self.debounce_seconds = debounce_seconds
        self.sync_interval_seconds = sync_interval_seconds
        self.editing_rows_delay = editing_rows_delay

        self.sheets: Dict[int, Dict[str, Any]] = {
            gid: {cid: None for cid in rubric.criterion_ids} for gid in rubric.group_ids
        }
        self.comments: Dict[int, str] = {gid: "" for gid in rubric.group_ids}
        self.finalized = False
        self.edit_mode = False

        self._debounce_due: Optional[float] = None
        self._edit_rows_due: Optional[float] = None
        self._next_sync = clock() + sync_interval_seconds

    # -----------------------
    # local edits
    # -----------------------
    def set_score(self, group_id: int, criterion_id: str, value: Any) -> None:
        crit = self.rubric.criterion(criterion_id)
        self.sheets[group_id][criterion_id] = clamp_score(value, crit.max_score)
        self._arm()

    def set_comment(self, group_id: int, text: str) -> None:
        self.comments[group_id] = text or ""
        self._arm()

    def _arm(self) -> None:
        self._debounce_due = self.clock() + self.debounce_seconds

    def status_of(self, group_id: int) -> Status:
        return lifecycle.classify(self.sheets[group_id], self.rubric)

    @property
    def all_complete(self) -> bool:
        return all(self.status_of(gid) is Status.GROUP_SUBMITTED for gid in self.rubric.group_ids)

    @property
    def progress_pct(self) -> int:
        slots = len(self.rubric.groups) * len(self.rubric.criteria)
        filled = sum(1 for sheet in self.sheets.values() for v in sheet.values() if v is not None)
        return round(100 * filled / slots) if slots else 0

    # -----------------------
    # writes
    # -----------------------
    def pending_records(self) -> List[EvaluationRecord]:
        return lifecycle.stamp_all(self.identity, self.sheets, self.comments, self.rubric, self.wallclock())

    def flush(self) -> int:
        self._debounce_due = None
        records = self.pending_records()
        self.client.append(records)
        logger.debug("Flushed %d record(s) for %s", len(records), self.identity.id)
        return len(records)

    def sync(self) -> int:
        self._next_sync = self.clock() + self.sync_interval_seconds
        n = self.flush()
        self.client.save_draft(self.identity.id, self.draft())
        return n

    def poll(self) -> None:
        now = self.clock()
        if self._debounce_due is not None and now >= self._debounce_due:
            self.flush()
        if self._edit_rows_due is not None and now >= self._edit_rows_due:
            self._edit_rows_due = None
            self.flush()
        if not self.finalized and now >= self._next_sync:
            self.sync()

    def finalize(self) -> List[EvaluationRecord]:
        """Raises IncompleteEvaluation, leaving nothing written, if any group is unfinished."""
        records = lifecycle.finalize(self.identity, self.sheets, self.comments, self.rubric, self.wallclock())
        self._debounce_due = None
        self._edit_rows_due = None
        self.client.append(records)
        self.client.delete_draft(self.identity.id)
        self.finalized = True
        self.edit_mode = False
        return records

    def edit_scores(self) -> None:
        """Reopen a finalized evaluation; local scores become editable again."""
        self.client.reopen(self.identity.id)
        self.finalized = False
        self.edit_mode = True
        self._edit_rows_due = self.clock() + self.editing_rows_delay
        self._next_sync = self.clock() + self.sync_interval_seconds

    # -----------------------
    # restore
    # -----------------------
    def load(self, reconciled: Iterable[Dict[str, Any]]) -> None:
        """Take local state from listMyRecords output."""
        statuses = {}
        for item in reconciled:
            record = item.get("record")
            if not record:
                continue
            gid = int(record["groupId"])
            if gid not in self.sheets:
                continue
            scores = record.get("criterionScores") or {}
            for cid in self.rubric.criterion_ids:
                self.sheets[gid][cid] = clamp_score(scores.get(cid), self.rubric.criterion(cid).max_score)
            self.comments[gid] = record.get("comment") or ""
            statuses[gid] = item.get("status")

        self.finalized = bool(statuses) and all(
            statuses.get(gid) == Status.ALL_SUBMITTED.value for gid in self.rubric.group_ids
        )

    def draft(self) -> Dict[str, Any]:
        return {
            "scores": {str(gid): dict(sheet) for gid, sheet in self.sheets.items()},
            "comments": {str(gid): text for gid, text in self.comments.items()},
            "savedAt": lifecycle.iso(self.wallclock()),
        }

    def restore_draft(self, draft: Dict[str, Any]) -> None:
        for gid_s, sheet in (draft.get("scores") or {}).items():
            gid = int(gid_s)
            if gid not in self.sheets:
                continue
            for cid in self.rubric.criterion_ids:
                self.sheets[gid][cid] = clamp_score(sheet.get(cid), self.rubric.criterion(cid).max_score)
        for gid_s, text in (draft.get("comments") or {}).items():
            if int(gid_s) in self.comments:
                self.comments[int(gid_s)] = text or ""

    # -----------------------
    # loop
    # -----------------------
    async def run(self, stop: asyncio.Event, tick: float = 0.05) -> None:
        """Poll until stop is set, then flush any pending edit. Client calls run in a worker thread."""
        while not stop.is_set():
            await asyncio.to_thread(self.poll)
            try:
                await asyncio.wait_for(stop.wait(), timeout=tick)
            except asyncio.TimeoutError:
                pass
        if self._debounce_due is not None:
            await asyncio.to_thread(self.flush)
