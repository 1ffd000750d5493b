# mentor/memory/db.py

import sqlite3
from pathlib import Path
from typing import Union

PathLike = Union[str, Path]


def get_connection(db_path: PathLike) -> sqlite3.Connection:
    """
    Return a SQLite connection.
    Uses Row factory to allow dict-like access.
    Caller is responsible for closing.
    """
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: PathLike) -> None:
    """
    Initialize the assignment directory schema if it does not exist.
    Safe to call multiple times.
    """
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = get_connection(db_path)
    cur = conn.cursor()

    # profiles: which term a caller belongs to
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS profiles (
            id TEXT PRIMARY KEY,           -- caller / subject id
            term_id INTEGER,
            updated_at TEXT NOT NULL
        )
        """
    )

    # pre_assignments: per-term assignment prompts shown in the chat
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS pre_assignments (
            term_id INTEGER NOT NULL,
            assignment_id TEXT NOT NULL,   -- chat topic id, e.g. '3-12'
            system_instruction TEXT,
            ai_name TEXT,
            ai_description TEXT,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (term_id, assignment_id)
        )
        """
    )

    conn.commit()
    conn.close()
