from __future__ import annotations

from io import StringIO
from typing import Any, Dict, Iterable, List

import numpy as np
import pandas as pd

from .config import Rubric
from .reconcile import ReconciledState
from .records import FINAL_STATUSES, Status


def final_states(states: Iterable[ReconciledState], final_only: bool = False) -> List[ReconciledState]:
    """group_submitted + all_submitted, or only all_submitted when final_only."""
    allowed = (Status.ALL_SUBMITTED,) if final_only else FINAL_STATUSES
    return [s for s in states if s.status in allowed]


def scores_frame(states: Iterable[ReconciledState], rubric: Rubric) -> pd.DataFrame:
    """
    rows = one contributing reconciled record
    cols = identity_id, group_id, <criterion ids...>, total
    total is each record's own sum of criteria.
    """
    crit = rubric.criterion_ids
    rows = []
    for s in states:
        row = {"identity_id": s.identity_id, "group_id": s.group_id}
        for cid in crit:
            v = s.scores.get(cid)
            row[cid] = np.nan if v is None else float(v)
        rows.append(row)

    df = pd.DataFrame(rows, columns=["identity_id", "group_id", *crit])
    df[crit] = df[crit].apply(pd.to_numeric, errors="coerce")
    df["total"] = df[crit].sum(axis=1, skipna=True)
    return df


def group_stats(frame: pd.DataFrame, rubric: Rubric) -> pd.DataFrame:
    """Per group: count, per-criterion mean/min/max, average/min/max of totals."""
    rows = []
    for g in rubric.groups:
        sub = frame[frame["group_id"] == g.id]
        row: Dict[str, Any] = {"group_id": g.id, "name": g.name, "count": int(len(sub))}
        for cid in rubric.criterion_ids:
            col = sub[cid].dropna()
            row[f"{cid}_mean"] = col.mean() if len(col) else np.nan
            row[f"{cid}_min"] = col.min() if len(col) else np.nan
            row[f"{cid}_max"] = col.max() if len(col) else np.nan
        totals = sub["total"]
        row["average"] = totals.mean() if len(totals) else np.nan
        row["min_total"] = totals.min() if len(totals) else np.nan
        row["max_total"] = totals.max() if len(totals) else np.nan
        rows.append(row)
    return pd.DataFrame(rows)


def rank_groups(stats: pd.DataFrame) -> pd.DataFrame:
    """
    Sort: higher average wins; tie-breaker: group id ascending.
    Groups nobody has finished scoring go last, unranked.
    """
    scored = stats[stats["average"].notna()]
    unscored = stats[stats["average"].isna()].sort_values("group_id", kind="mergesort")

    ranked = scored.sort_values(
        by=["average", "group_id"],
        ascending=[False, True],
        kind="mergesort",
    ).reset_index(drop=True)
    ranked.insert(0, "rank", range(1, len(ranked) + 1))

    if unscored.empty:
        return ranked
    unscored = unscored.copy()
    unscored.insert(0, "rank", np.nan)
    if ranked.empty:
        return unscored.reset_index(drop=True)
    return pd.concat([ranked, unscored], ignore_index=True)


def juror_stats(
    all_states: Iterable[ReconciledState],
    final: pd.DataFrame,
    rubric: Rubric,
    outlier_threshold: float = 1.0,
) -> pd.DataFrame:
    """
    completion: filled criteria over groups x criteria, from every reconciled
    record regardless of status.
    mean/std: population statistics of the juror's final totals.
    tendency: juror mean vs. the mean of all final totals, in units of their
    standard deviation.
    """
    all_states = list(all_states)
    slots = len(rubric.groups) * len(rubric.criteria)
    group_ids = set(rubric.group_ids)

    names: Dict[str, str] = {}
    filled: Dict[str, int] = {}
    for s in all_states:
        filled.setdefault(s.identity_id, 0)
        if s.group_id in group_ids:
            filled[s.identity_id] += sum(1 for cid in rubric.criterion_ids if s.scores.get(cid) is not None)
        if s.best_record is not None and s.best_record.display_name:
            names[s.identity_id] = s.best_record.display_name

    global_totals = final["total"].to_numpy(dtype=float)
    global_mean = float(np.mean(global_totals)) if len(global_totals) else np.nan
    global_std = float(np.std(global_totals)) if len(global_totals) else np.nan
    contributing = final["identity_id"].nunique()

    rows = []
    for jid in sorted(filled):
        totals = final.loc[final["identity_id"] == jid, "total"].to_numpy(dtype=float)
        mean = float(np.mean(totals)) if len(totals) else np.nan
        std = float(np.std(totals)) if len(totals) else np.nan

        tendency = "typical"
        if len(totals) and contributing >= 2 and global_std > 0:
            z = (mean - global_mean) / global_std
            if z > outlier_threshold:
                tendency = "lenient"
            elif z < -outlier_threshold:
                tendency = "strict"

        rows.append({
            "identity_id": jid,
            "display_name": names.get(jid, ""),
            "completion": 100.0 * filled[jid] / slots if slots else 0.0,
            "final_count": int(len(totals)),
            "mean": mean,
            "std": std,
            "tendency": tendency,
        })
    return pd.DataFrame(
        rows,
        columns=["identity_id", "display_name", "completion", "final_count", "mean", "std", "tendency"],
    )


def _clean(value: Any) -> Any:
    if isinstance(value, (np.integer,)):
        return int(value)
    if isinstance(value, (float, np.floating)):
        return None if np.isnan(value) else float(value)
    return value


def _records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    return [{k: _clean(v) for k, v in row.items()} for row in df.to_dict(orient="records")]


def summarize(
    states: Iterable[ReconciledState],
    rubric: Rubric,
    final_only: bool = False,
    outlier_threshold: float = 1.0,
) -> Dict[str, Any]:
    states = list(states)
    final = scores_frame(final_states(states, final_only), rubric)
    stats = group_stats(final, rubric)
    ranking = rank_groups(stats)
    jurors = juror_stats(states, final, rubric, outlier_threshold)

    ranked = _records(ranking)
    for row in ranked:
        if row.get("rank") is not None:
            row["rank"] = int(row["rank"])
    return {
        "finalOnly": final_only,
        "ranking": ranked,
        "jurors": _records(jurors),
    }


def results_csv(states: Iterable[ReconciledState], rubric: Rubric, final_only: bool = False) -> str:
    final = scores_frame(final_states(states, final_only), rubric)
    ranking = rank_groups(group_stats(final, rubric))
    out = ranking[["rank", "group_id", "name", "count", "average", "min_total", "max_total"]].copy()
    out["rank"] = out["rank"].astype("Int64")
    buf = StringIO()
    out.to_csv(buf, index=False)
    return buf.getvalue()
