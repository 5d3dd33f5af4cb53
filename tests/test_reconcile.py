"""Reconciliation: one canonical record per (identity, group), whatever the log looks like."""

import itertools
import random
from datetime import datetime, timezone

from juryapp.reconcile import (
    candidate,
    merge,
    parse_timestamp,
    reconcile,
    states_for,
)
from juryapp.records import Status

from conftest import FULL, rec


def winner(records):
    return reconcile(records)


# =====================================================================
# Merge rule
# =====================================================================


class TestMergeRule:
    def test_later_timestamp_wins(self) -> None:
        old = rec(ts="2026-05-01T10:00:00Z", status="group_submitted", scores=FULL)
        new = rec(ts="2026-05-01T10:00:05Z", status="in_progress")
        out = winner([old, new])
        assert out[("j1-aaaa", 1)].best_record is new
        assert out[("j1-aaaa", 1)].status is Status.IN_PROGRESS

    def test_status_priority_breaks_exact_tie(self) -> None:
        # juror A, two sessions, same instant
        a = rec(ts=1, status="in_progress")
        b = rec(ts=1, status="group_submitted", scores=FULL)
        assert winner([a, b])[("j1-aaaa", 1)].best_record is b
        assert winner([b, a])[("j1-aaaa", 1)].best_record is b

    def test_log_order_does_not_matter(self) -> None:
        # juror B, group 2, appended t=3 then t=5
        t3 = rec(identity_id="j1-bbbb", group_id=2, ts=3)
        t5 = rec(identity_id="j1-bbbb", group_id=2, ts=5, scores={"design": 11})
        assert winner([t3, t5])[("j1-bbbb", 2)].best_record is t5
        assert winner([t5, t3])[("j1-bbbb", 2)].best_record is t5

    def test_full_tie_is_deterministic(self) -> None:
        a = rec(ts=7, scores={"design": 10})
        b = rec(ts=7, scores={"design": 12})
        w1 = winner([a, b])[("j1-aaaa", 1)].best_record
        w2 = winner([b, a])[("j1-aaaa", 1)].best_record
        assert w1 == w2

    def test_merge_with_none(self) -> None:
        c = candidate(rec())
        assert merge(None, c) is c
        assert merge(c, None) is c

    def test_keys_are_independent(self) -> None:
        out = winner([
            rec(group_id=1, ts=1),
            rec(group_id=2, ts=2),
            rec(identity_id="j1-other", group_id=1, ts=3),
        ])
        assert set(out) == {("j1-aaaa", 1), ("j1-aaaa", 2), ("j1-other", 1)}


# =====================================================================
# Algebraic properties
# =====================================================================


def _noisy_log():
    rng = random.Random(42)
    statuses = ["in_progress", "group_submitted", "all_submitted"]
    log = []
    for i in range(60):
        log.append(rec(
            identity_id=f"j1-{i % 3}",
            group_id=1 + i % 4,
            ts=rng.randint(1, 8),
            status=rng.choice(statuses),
            scores={"design": rng.randint(0, 30), "teamwork": rng.choice([None, 5])},
        ))
    return log


def _winners(records):
    return {k: s.best_record for k, s in reconcile(records).items()}


class TestProperties:
    def test_idempotent(self) -> None:
        log = _noisy_log()
        assert _winners(log) == _winners(log)

    def test_duplicates_do_not_change_winner(self) -> None:
        log = _noisy_log()
        assert _winners(log + log) == _winners(log)

    def test_shuffle_does_not_change_winner(self) -> None:
        log = _noisy_log()
        expected = _winners(log)
        rng = random.Random(7)
        for _ in range(20):
            shuffled = list(log)
            rng.shuffle(shuffled)
            assert _winners(shuffled) == expected

    def test_reconciling_winners_again_is_stable(self) -> None:
        log = _noisy_log()
        first = _winners(log)
        assert _winners(list(first.values())) == first

    def test_any_split_converges(self) -> None:
        log = _noisy_log()
        expected = _winners(log)
        half = len(log) // 2
        partial = list(_winners(log[:half]).values()) + list(_winners(log[half:]).values())
        assert _winners(partial) == expected

    def test_later_timestamp_always_dominates(self) -> None:
        for ts_a, ts_b in itertools.permutations([1, 2, 3], 2):
            a = rec(ts=ts_a, status="all_submitted", scores=FULL)
            b = rec(ts=ts_b, status="in_progress")
            best = winner([a, b])[("j1-aaaa", 1)].best_record
            assert best is (a if ts_a > ts_b else b)


# =====================================================================
# Exclusions
# =====================================================================


class TestExclusions:
    def test_empty_record_cannot_overwrite(self) -> None:
        full = rec(ts=1, status="group_submitted", scores=FULL)
        empty = rec(ts=9, scores={"design": None, "delivery": ""})
        assert winner([full, empty])[("j1-aaaa", 1)].best_record is full

    def test_only_empty_records_means_no_state(self) -> None:
        assert winner([rec(scores={})]) == {}

    def test_bad_timestamp_excluded(self) -> None:
        good = rec(ts=1)
        bad = rec(ts="yesterday-ish", status="all_submitted", scores=FULL)
        assert winner([good, bad])[("j1-aaaa", 1)].best_record is good

    def test_non_numeric_score_excluded(self) -> None:
        good = rec(ts=1)
        bad = rec(ts=2, scores={"design": "twenty"})
        assert winner([good, bad])[("j1-aaaa", 1)].best_record is good

    def test_unknown_status_excluded(self) -> None:
        good = rec(ts=1)
        bad = rec(ts=2, status="submitted!!")
        assert winner([good, bad])[("j1-aaaa", 1)].best_record is good

    def test_scores_not_a_mapping_excluded(self) -> None:
        assert winner([rec(scores="{not json")]) == {}

    def test_numeric_strings_accepted(self) -> None:
        out = winner([rec(scores={"design": " 12 ", "teamwork": "3.5"})])
        assert out[("j1-aaaa", 1)].total == 15.5


# =====================================================================
# Timestamps + not_started fill
# =====================================================================


class TestParsing:
    def test_iso_with_z(self) -> None:
        assert parse_timestamp("2026-05-01T10:00:00Z") == datetime(2026, 5, 1, 10, tzinfo=timezone.utc)

    def test_naive_iso_is_utc(self) -> None:
        assert parse_timestamp("2026-05-01T10:00:00") == datetime(2026, 5, 1, 10, tzinfo=timezone.utc)

    def test_offsets_compare_correctly(self) -> None:
        assert parse_timestamp("2026-05-01T12:00:00+03:00") < parse_timestamp("2026-05-01T10:00:00Z")

    def test_any_fraction_length(self) -> None:
        base = datetime(2026, 5, 1, 10, tzinfo=timezone.utc)
        assert parse_timestamp("2026-05-01T10:00:00.1Z") == base.replace(microsecond=100000)
        assert parse_timestamp("2026-05-01T10:00:00.1234Z") == base.replace(microsecond=123400)
        assert parse_timestamp("2026-05-01T10:00:00.123456789+00:00") == base.replace(microsecond=123456)

    def test_epoch_seconds_and_millis_agree(self) -> None:
        assert parse_timestamp(1_700_000_000) == parse_timestamp(1_700_000_000_000)
        assert parse_timestamp("5") == parse_timestamp(5)

    def test_rejects_junk(self) -> None:
        for v in (None, "", "soon", True, float("nan")):
            assert parse_timestamp(v) is None


class TestStatesFor:
    def test_missing_groups_are_not_started(self) -> None:
        reconciled = reconcile([rec(group_id=2)])
        states = states_for("j1-aaaa", [1, 2, 3], reconciled)
        assert [s.status for s in states] == [Status.NOT_STARTED, Status.IN_PROGRESS, Status.NOT_STARTED]
        assert states[0].best_record is None


# =====================================================================
# Rubric-aware reconciliation
# =====================================================================


class TestRubricAware:
    def test_foreign_keys_cannot_win(self, rubric) -> None:
        full = rec(ts="2026-05-01T10:00:00Z", status="group_submitted", scores=FULL)
        foreign = rec(ts="2026-05-01T10:00:05Z", scores={"bogus": 5})
        state = reconcile([full, foreign], rubric)[("j1-aaaa", 1)]
        assert state.best_record is full
        assert state.filled == 4

    def test_foreign_keys_are_dropped_from_totals(self, rubric) -> None:
        state = reconcile([rec(scores={"design": 10, "bogus": 50})], rubric)[("j1-aaaa", 1)]
        assert state.total == 10.0
        assert state.filled == 1
        assert set(state.scores) == set(rubric.criterion_ids)

    def test_out_of_range_excluded(self, rubric) -> None:
        good = rec(ts=1, scores=FULL)
        for bad_scores in ({"design": 500}, {"teamwork": 11}, {"delivery": -1}):
            bad = rec(ts=2, status="group_submitted", scores=bad_scores)
            assert reconcile([good, bad], rubric)[("j1-aaaa", 1)].best_record is good

    def test_bounds_are_inclusive(self, rubric) -> None:
        edge = rec(scores={"design": 30, "teamwork": 0})
        assert reconcile([edge], rubric)[("j1-aaaa", 1)].total == 30.0
