from __future__ import annotations

import hashlib
import sqlite3


def db(path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    return conn


def sha256(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def init_db(path: str) -> None:
    with db(path) as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS credentials (
                identity_id TEXT PRIMARY KEY,
                display_name TEXT NOT NULL,
                organization TEXT NOT NULL,
                pin_hash TEXT NOT NULL,
                failed_attempts INTEGER NOT NULL DEFAULT 0,
                locked INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sessions (
                token TEXT PRIMARY KEY,
                identity_id TEXT NOT NULL,
                expires_at TEXT NOT NULL
            );

            -- append-only: rows are inserted, never updated or deleted
            CREATE TABLE IF NOT EXISTS evaluations (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                identity_id TEXT NOT NULL,
                group_id INTEGER NOT NULL,
                timestamp TEXT,
                scores TEXT,
                comment TEXT NOT NULL DEFAULT '',
                status TEXT,
                editing_flag TEXT NOT NULL DEFAULT '',
                display_name TEXT NOT NULL DEFAULT '',
                organization TEXT NOT NULL DEFAULT '',
                appended_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_evaluations_identity ON evaluations(identity_id, group_id);

            CREATE TABLE IF NOT EXISTS reopen_marks (
                identity_id TEXT PRIMARY KEY,
                reopened_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS drafts (
                identity_id TEXT PRIMARY KEY,
                draft TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            """
        )
