# mentor/memory/repository.py

import asyncio
from typing import Optional

from mentor.memory.db import PathLike, get_connection, init_db
from mentor.memory.models import Assignment, Profile, now_iso


def initialize(db_path: PathLike) -> None:
    """
    Initialize DB schema. Call once at startup.
    """
    init_db(db_path)


def save_profile(db_path: PathLike, profile: Profile) -> None:
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute(
        """
        INSERT OR REPLACE INTO profiles (id, term_id, updated_at)
        VALUES (?, ?, ?)
        """,
        (profile.id, profile.term_id, now_iso()),
    )
    conn.commit()
    conn.close()


def save_assignment(db_path: PathLike, assignment: Assignment) -> None:
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute(
        """
        INSERT OR REPLACE INTO pre_assignments
            (term_id, assignment_id, system_instruction, ai_name, ai_description, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            assignment.term_id,
            assignment.assignment_id,
            assignment.system_instruction,
            assignment.ai_name,
            assignment.ai_description,
            now_iso(),
        ),
    )
    conn.commit()
    conn.close()


def get_profile_term(db_path: PathLike, subject_id: str) -> Optional[int]:
    """
    Return the term a caller belongs to, or None if unknown.
    """
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute("SELECT term_id FROM profiles WHERE id = ?", (subject_id,))
    row = cur.fetchone()
    conn.close()

    if row is None or row["term_id"] is None:
        return None
    return int(row["term_id"])


def get_assignment(db_path: PathLike, term_id: int, assignment_id: str) -> Optional[Assignment]:
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute(
        """
        SELECT term_id, assignment_id, system_instruction, ai_name, ai_description, updated_at
        FROM pre_assignments
        WHERE term_id = ? AND assignment_id = ?
        """,
        (term_id, assignment_id),
    )
    row = cur.fetchone()
    conn.close()

    if row is None:
        return None
    return Assignment(
        term_id=row["term_id"],
        assignment_id=row["assignment_id"],
        system_instruction=row["system_instruction"] or "",
        ai_name=row["ai_name"] or "",
        ai_description=row["ai_description"] or "",
        updated_at=row["updated_at"],
    )


class AssignmentDirectory:
    """
    Read-only view used by the chat gateway. sqlite3 is blocking, so every
    lookup runs in a worker thread.
    """

    def __init__(self, db_path: PathLike) -> None:
        self.db_path = db_path
        initialize(db_path)

    async def lookup(self, subject_id: str, topic_id: str) -> Optional[Assignment]:
        term_id = await asyncio.to_thread(get_profile_term, self.db_path, subject_id)
        if term_id is None:
            return None
        return await asyncio.to_thread(get_assignment, self.db_path, term_id, topic_id)
