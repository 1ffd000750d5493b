# mentor/research/models.py

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

# Tag carried by every research payload returned over HTTP
RESEARCH_TAG = "DR"


class JobStatus(str, Enum):
    QUEUED = "queued"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self is not JobStatus.QUEUED


def map_upstream_status(raw: Optional[str]) -> JobStatus:
    """
    Responses API status -> job status.

    queued / in_progress -> queued, incomplete (and anything unknown) -> failed.
    """
    value = (raw or "queued").strip().lower()
    if value in ("queued", "in_progress"):
        return JobStatus.QUEUED
    if value == "completed":
        return JobStatus.COMPLETED
    if value == "cancelled":
        return JobStatus.CANCELLED
    return JobStatus.FAILED


@dataclass(frozen=True)
class Citation:
    url: str
    title: str = ""
    start_index: Optional[int] = None
    end_index: Optional[int] = None

    @classmethod
    def from_annotation(cls, annotation: Dict[str, Any]) -> "Citation":
        start = annotation.get("start_index")
        end = annotation.get("end_index")
        return cls(
            url=str(annotation.get("url") or ""),
            title=str(annotation.get("title") or ""),
            start_index=start if isinstance(start, int) else None,
            end_index=end if isinstance(end, int) else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": "url_citation", "url": self.url, "title": self.title}
        if self.start_index is not None:
            data["start_index"] = self.start_index
        if self.end_index is not None:
            data["end_index"] = self.end_index
        return data


@dataclass(frozen=True)
class ResearchResult:
    text: str
    citations: List[Citation] = field(default_factory=list)
    steps: List[Dict[str, Any]] = field(default_factory=list)
    model_used: str = ""
    rewritten_query: str = ""
    cached: bool = False


@dataclass
class ResearchJob:
    id: str
    status: JobStatus = JobStatus.QUEUED
    rewritten_query: str = ""
    text: str = ""
    citations: List[Citation] = field(default_factory=list)
    steps: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    model_used: str = ""

    @property
    def terminal(self) -> bool:
        return self.status.terminal
