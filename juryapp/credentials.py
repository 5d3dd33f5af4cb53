"""
PIN credentials and sessions.

A juror gets a random PIN on first contact, shown once. Wrong PINs burn an
attempt budget; at zero the identity is locked until an administrator
resets it. A correct PIN returns a session token scoped to that identity.
"""
from __future__ import annotations

import logging
import secrets
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .config import MAX_PIN_ATTEMPTS, PIN_LENGTH
from .db import db, sha256
from .errors import AlreadyIssued, InvalidSession, NotIssued
from .identity import Identity

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_pin(length: int = PIN_LENGTH) -> str:
    """Random digits, leading zeros allowed."""
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


def pin_hash(identity_id: str, pin: str) -> str:
    return sha256(f"{identity_id}:{pin}")


@dataclass(frozen=True)
class VerifyResult:
    valid: bool
    locked: bool
    attempts_left: int
    session_token: Optional[str] = None

    def to_dict(self) -> dict:
        out = {"valid": self.valid, "locked": self.locked, "attemptsLeft": self.attempts_left}
        if self.session_token:
            out["sessionToken"] = self.session_token
        return out


class CredentialStore:
    def __init__(
        self,
        db_path: str,
        pin_length: int = PIN_LENGTH,
        max_attempts: int = MAX_PIN_ATTEMPTS,
        session_ttl_minutes: int = 240,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.db_path = db_path
        self.pin_length = pin_length
        self.max_attempts = max_attempts
        self.session_ttl = timedelta(minutes=session_ttl_minutes)
        self.clock = clock

    def exists(self, identity_id: str) -> bool:
        with db(self.db_path) as conn:
            row = conn.execute(
                "SELECT 1 FROM credentials WHERE identity_id=?", (identity_id,)
            ).fetchone()
        return row is not None

    def issue(self, identity: Identity) -> str:
        pin = generate_pin(self.pin_length)
        try:
            with db(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO credentials(identity_id, display_name, organization, pin_hash,
                                            failed_attempts, locked, created_at)
                    VALUES(?,?,?,?,0,0,?)
                    """,
                    (identity.id, identity.display_name, identity.organization,
                     pin_hash(identity.id, pin), self.clock().isoformat()),
                )
        except sqlite3.IntegrityError:
            raise AlreadyIssued(f"A PIN was already issued for {identity.id}.")
        logger.info("PIN issued for %s", identity.id)
        return pin

    def verify(self, identity_id: str, pin: str) -> VerifyResult:
        with db(self.db_path) as conn:
            # write lock before the read: concurrent attempts on one identity serialize
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT pin_hash, failed_attempts, locked FROM credentials WHERE identity_id=?",
                (identity_id,),
            ).fetchone()
            if not row:
                raise NotIssued(f"No PIN issued for {identity_id}.")

            if row["locked"]:
                return VerifyResult(valid=False, locked=True, attempts_left=0)

            if secrets.compare_digest(pin_hash(identity_id, str(pin).strip()), row["pin_hash"]):
                conn.execute("UPDATE credentials SET failed_attempts=0 WHERE identity_id=?", (identity_id,))
                token = self._open_session(conn, identity_id)
                return VerifyResult(valid=True, locked=False, attempts_left=self.max_attempts,
                                    session_token=token)

            attempts = row["failed_attempts"] + 1
            left = max(0, self.max_attempts - attempts)
            locked = left == 0
            conn.execute(
                "UPDATE credentials SET failed_attempts=?, locked=? WHERE identity_id=?",
                (attempts, int(locked), identity_id),
            )

        if locked:
            logger.warning("Identity %s locked after %d failed PIN attempts", identity_id, attempts)
        else:
            logger.info("Wrong PIN for %s, %d attempt(s) left", identity_id, left)
        return VerifyResult(valid=False, locked=locked, attempts_left=left)

    def reset(self, identity_id: str, forget_pin: bool = False) -> None:
        with db(self.db_path) as conn:
            if forget_pin:
                cur = conn.execute("DELETE FROM credentials WHERE identity_id=?", (identity_id,))
            else:
                cur = conn.execute(
                    "UPDATE credentials SET failed_attempts=0, locked=0 WHERE identity_id=?",
                    (identity_id,),
                )
            if cur.rowcount == 0:
                raise NotIssued(f"No PIN issued for {identity_id}.")
            conn.execute("DELETE FROM sessions WHERE identity_id=?", (identity_id,))
        logger.warning("Credential reset for %s (forget_pin=%s)", identity_id, forget_pin)

    # -----------------------
    # Sessions
    # -----------------------
    def _open_session(self, conn: sqlite3.Connection, identity_id: str) -> str:
        token = secrets.token_urlsafe(24)
        now = self.clock()
        conn.execute("DELETE FROM sessions WHERE expires_at<?", (now.isoformat(),))
        conn.execute(
            "INSERT INTO sessions(token, identity_id, expires_at) VALUES(?,?,?)",
            (token, identity_id, (now + self.session_ttl).isoformat()),
        )
        return token

    def check_session(self, identity_id: str, token: Optional[str]) -> None:
        if not token:
            raise InvalidSession("Missing session token.")
        with db(self.db_path) as conn:
            row = conn.execute(
                "SELECT identity_id, expires_at FROM sessions WHERE token=?", (token,)
            ).fetchone()
        if not row or row["identity_id"] != identity_id:
            raise InvalidSession("Invalid session.")
        if datetime.fromisoformat(row["expires_at"]) < self.clock():
            raise InvalidSession("Session expired.")
