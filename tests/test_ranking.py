import math

import pytest

from juryapp.ranking import (
    final_states,
    group_stats,
    juror_stats,
    rank_groups,
    results_csv,
    scores_frame,
    summarize,
)
from juryapp.reconcile import reconcile
from juryapp.records import Status

from conftest import rec

S90 = {"design": 30, "delivery": 30, "technical": 25, "teamwork": 5}
S50 = {"design": 10, "delivery": 10, "technical": 25, "teamwork": 5}
S55 = {"design": 15, "delivery": 10, "technical": 25, "teamwork": 5}


def _states(records):
    return list(reconcile(records).values())


@pytest.fixture
def panel():
    """Three jurors, groups 1 and 2 only: A generous, B harsh, C in between."""
    records = []
    for jid, scores in (("j1-a", S90), ("j1-b", S50), ("j1-c", S55)):
        for gid in (1, 2):
            records.append(rec(identity_id=jid, group_id=gid, ts=1, status="all_submitted",
                               scores=scores, display_name=jid.upper()))
    return _states(records)


# =====================================================================
# Selection + frame
# =====================================================================


class TestFinalStates:
    def test_final_only_switch(self) -> None:
        states = _states([
            rec(group_id=1, status="in_progress"),
            rec(group_id=2, status="group_submitted", scores=S50),
            rec(group_id=3, status="all_submitted", scores=S90),
        ])
        assert {s.group_id for s in final_states(states)} == {2, 3}
        assert {s.group_id for s in final_states(states, final_only=True)} == {3}

    def test_frame_totals_skip_empty(self, rubric) -> None:
        states = _states([rec(status="group_submitted", scores={"design": 10, "teamwork": 4})])
        df = scores_frame(states, rubric)
        assert df.loc[0, "total"] == 14.0
        assert math.isnan(df.loc[0, "delivery"])


# =====================================================================
# Ranking
# =====================================================================


class TestRanking:
    def test_tie_breaks_on_group_id(self, panel, rubric) -> None:
        ranking = rank_groups(group_stats(scores_frame(panel, rubric), rubric))
        top = ranking.head(2)
        assert list(top["group_id"]) == [1, 2]
        assert list(top["rank"]) == [1, 2]
        assert list(top["average"]) == [65.0, 65.0]

    def test_higher_average_ranks_first(self, rubric) -> None:
        states = _states([
            rec(identity_id="j1-a", group_id=1, status="all_submitted", scores=S50),
            rec(identity_id="j1-a", group_id=4, status="all_submitted", scores=S90),
            rec(identity_id="j1-b", group_id=4, status="all_submitted", scores=S55),
        ])
        ranking = rank_groups(group_stats(scores_frame(states, rubric), rubric))
        assert list(ranking["group_id"][:2]) == [4, 1]
        row = ranking.iloc[0]
        assert row["count"] == 2
        assert row["average"] == 72.5
        assert (row["min_total"], row["max_total"]) == (55.0, 90.0)
        assert row["design_mean"] == 22.5

    def test_unscored_groups_go_last_unranked(self, panel, rubric) -> None:
        ranking = rank_groups(group_stats(scores_frame(panel, rubric), rubric))
        assert list(ranking["group_id"]) == [1, 2, 3, 4, 5, 6]
        assert ranking["rank"][2:].isna().all()

    def test_nobody_scored(self, rubric) -> None:
        ranking = rank_groups(group_stats(scores_frame([], rubric), rubric))
        assert len(ranking) == 6
        assert ranking["rank"].isna().all()


# =====================================================================
# Jurors
# =====================================================================


class TestJurorStats:
    def test_completion_counts_any_status(self, rubric) -> None:
        half = {"design": 1, "delivery": 2}
        states = _states([rec(group_id=g, scores=half) for g in rubric.group_ids])
        jurors = juror_stats(states, scores_frame(final_states(states), rubric), rubric)
        row = jurors.iloc[0]
        assert row["completion"] == 50.0
        assert row["final_count"] == 0
        assert math.isnan(row["mean"])
        assert row["tendency"] == "typical"

    def test_population_std(self, rubric) -> None:
        states = _states([
            rec(group_id=1, status="group_submitted", scores=S50),
            rec(group_id=2, status="group_submitted", scores=S90),
        ])
        jurors = juror_stats(states, scores_frame(final_states(states), rubric), rubric)
        assert jurors.iloc[0]["mean"] == 70.0
        assert jurors.iloc[0]["std"] == 20.0

    def test_tendency(self, panel, rubric) -> None:
        jurors = juror_stats(panel, scores_frame(panel, rubric), rubric, outlier_threshold=0.8)
        tendency = dict(zip(jurors["identity_id"], jurors["tendency"]))
        assert tendency == {"j1-a": "lenient", "j1-b": "strict", "j1-c": "typical"}

    def test_single_juror_is_typical(self, rubric) -> None:
        states = _states([
            rec(group_id=1, status="group_submitted", scores=S50),
            rec(group_id=2, status="group_submitted", scores=S90),
        ])
        jurors = juror_stats(states, scores_frame(states, rubric), rubric, outlier_threshold=0.1)
        assert jurors.iloc[0]["tendency"] == "typical"


# =====================================================================
# Outputs
# =====================================================================


class TestOutputs:
    def test_summary_is_json_friendly(self, panel, rubric) -> None:
        out = summarize(panel, rubric)
        assert out["finalOnly"] is False
        assert out["ranking"][0]["rank"] == 1
        assert out["ranking"][5]["rank"] is None
        assert out["ranking"][5]["average"] is None
        names = {j["identity_id"]: j["display_name"] for j in out["jurors"]}
        assert names["j1-a"] == "J1-A"

    def test_final_only_summary(self, rubric) -> None:
        states = _states([rec(group_id=1, status="group_submitted", scores=S90)])
        assert summarize(states, rubric)["ranking"][0]["group_id"] == 1
        assert summarize(states, rubric, final_only=True)["ranking"][0]["rank"] is None

    def test_csv(self, panel, rubric) -> None:
        lines = results_csv(panel, rubric).splitlines()
        assert lines[0] == "rank,group_id,name,count,average,min_total,max_total"
        assert lines[1] == "1,1,Group 1,3,65.0,50.0,90.0"
        assert lines[3].startswith(",3,Group 3,0,")

    def test_status_enum_survives(self, panel) -> None:
        assert all(s.status is Status.ALL_SUBMITTED for s in panel)
