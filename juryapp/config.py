from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional, Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict

PIN_LENGTH = 4
MAX_PIN_ATTEMPTS = 3

DEFAULT_DB_PATH = os.path.join(os.path.dirname(__file__), "judging.sqlite")


class Settings(BaseSettings):
    """
    Deployment settings, read from JURY_* environment variables or a .env file.

    deployment_secret guards every route; admin_secret additionally guards
    reset/export. An empty admin_secret disables the admin routes.
    """

    model_config = SettingsConfigDict(
        env_prefix="JURY_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    db_path: str = DEFAULT_DB_PATH
    deployment_secret: str = ""
    admin_secret: str = ""

    pin_length: int = PIN_LENGTH
    max_pin_attempts: int = MAX_PIN_ATTEMPTS
    session_ttl_minutes: int = 240
    reopen_window_minutes: int = 20

    final_only: bool = False
    outlier_threshold: float = 1.0

    rubric_path: Optional[str] = None

    log_level: str = "INFO"
    log_dir: Optional[str] = None


@lru_cache
def get_settings() -> Settings:
    return Settings()


# -----------------------
# Rubric (static reference data)
# -----------------------
@dataclass(frozen=True)
class Group:
    id: int
    name: str
    description: str = ""
    members: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Criterion:
    id: str
    label: str
    max_score: float
    short_label: str = ""


@dataclass(frozen=True)
class Rubric:
    groups: Tuple[Group, ...]
    criteria: Tuple[Criterion, ...]

    @property
    def group_ids(self) -> List[int]:
        return [g.id for g in self.groups]

    @property
    def criterion_ids(self) -> List[str]:
        return [c.id for c in self.criteria]

    @property
    def total_max(self) -> float:
        return sum(c.max_score for c in self.criteria)

    def criterion(self, criterion_id: str) -> Criterion:
        for c in self.criteria:
            if c.id == criterion_id:
                return c
        raise KeyError(criterion_id)

    def to_dict(self) -> dict:
        return {
            "groups": [
                {"id": g.id, "name": g.name, "description": g.description, "members": list(g.members)}
                for g in self.groups
            ],
            "criteria": [
                {"id": c.id, "label": c.label, "shortLabel": c.short_label, "maxScore": c.max_score}
                for c in self.criteria
            ],
        }


DEFAULT_GROUPS: Tuple[Group, ...] = tuple(
    Group(id=i, name=f"Group {i}") for i in range(1, 7)
)

DEFAULT_CRITERIA: Tuple[Criterion, ...] = (
    Criterion("design", "Written Communication (Poster)", 30, "Written"),
    Criterion("delivery", "Oral Communication (Presentation & Q&A)", 30, "Oral"),
    Criterion("technical", "Technical & Engineering Content", 30, "Technical"),
    Criterion("teamwork", "Teamwork & Professionalism", 10, "Teamwork"),
)

DEFAULT_RUBRIC = Rubric(groups=DEFAULT_GROUPS, criteria=DEFAULT_CRITERIA)


def load_rubric(path: Optional[str] = None) -> Rubric:
    """
    Read groups/criteria from a JSON file:

      {"groups": [{"id": 1, "name": "...", "description": "...", "members": [...]}],
       "criteria": [{"id": "design", "label": "...", "maxScore": 30}]}

    Falls back to DEFAULT_RUBRIC when no path is given.
    """
    if not path:
        return DEFAULT_RUBRIC

    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    groups = tuple(
        Group(
            id=int(g["id"]),
            name=str(g.get("name") or f"Group {g['id']}"),
            description=str(g.get("description", "")),
            members=tuple(g.get("members", [])),
        )
        for g in data["groups"]
    )
    criteria = tuple(
        Criterion(
            id=str(c["id"]),
            label=str(c.get("label", c["id"])),
            max_score=float(c["maxScore"]),
            short_label=str(c.get("shortLabel", "")),
        )
        for c in data["criteria"]
    )
    if not groups or not criteria:
        raise ValueError(f"Rubric file {path} must define at least one group and one criterion.")
    if len({g.id for g in groups}) != len(groups):
        raise ValueError(f"Rubric file {path} has duplicate group ids.")
    if len({c.id for c in criteria}) != len(criteria):
        raise ValueError(f"Rubric file {path} has duplicate criterion ids.")
    return Rubric(groups=groups, criteria=criteria)
