from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .db import db


class DraftStore:
    """Last UI state per juror, for resuming on another device. Overwritten in place."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    def save(self, identity_id: str, draft: Dict[str, Any]) -> str:
        updated_at = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
        with db(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO drafts(identity_id, draft, updated_at) VALUES(?,?,?)
                ON CONFLICT(identity_id) DO UPDATE SET draft=excluded.draft, updated_at=excluded.updated_at
                """,
                (identity_id, json.dumps(draft, ensure_ascii=False), updated_at),
            )
        return updated_at

    def load(self, identity_id: str) -> Optional[Dict[str, Any]]:
        with db(self.db_path) as conn:
            row = conn.execute(
                "SELECT draft, updated_at FROM drafts WHERE identity_id=?", (identity_id,)
            ).fetchone()
        if not row:
            return None
        try:
            draft = json.loads(row["draft"])
        except ValueError:
            return None
        return {"draft": draft, "updatedAt": row["updated_at"]}

    def delete(self, identity_id: str) -> None:
        with db(self.db_path) as conn:
            conn.execute("DELETE FROM drafts WHERE identity_id=?", (identity_id,))
