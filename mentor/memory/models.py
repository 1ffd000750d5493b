# mentor/memory/models.py

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

ISO_FMT = "%Y-%m-%dT%H:%M:%S"


def now_iso() -> str:
    return datetime.now(timezone.utc).strftime(ISO_FMT)


@dataclass
class Profile:
    id: str                     # caller / subject id
    term_id: Optional[int]
    updated_at: str = ""


@dataclass
class Assignment:
    term_id: int
    assignment_id: str          # same string as the chat topic id
    system_instruction: str = ""
    ai_name: str = ""
    ai_description: str = ""
    updated_at: str = ""
