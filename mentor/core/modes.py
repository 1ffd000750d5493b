# mentor/core/modes.py
#
# Backend selection for one turn, as a tagged union:
#   DirectMode(model)             stream a chat completion
#   ResearchMode()                run deep research and relay the report
#   FallbackMode(model, reason)   research failed; stream the search model

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from mentor.config.settings import RESEARCH_MODEL_SENTINEL, Settings


class ModeKind(str, Enum):
    DIRECT = "direct"
    RESEARCH = "research"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class DirectMode:
    model: str
    kind: ModeKind = ModeKind.DIRECT


@dataclass(frozen=True)
class ResearchMode:
    kind: ModeKind = ModeKind.RESEARCH


@dataclass(frozen=True)
class FallbackMode:
    model: str
    reason: str
    kind: ModeKind = ModeKind.FALLBACK


DispatchMode = Union[DirectMode, ResearchMode, FallbackMode]


def select_mode(requested_model: Optional[str], settings: Settings) -> DispatchMode:
    model = (requested_model or "").strip() or settings.chat_model
    if model == RESEARCH_MODEL_SENTINEL:
        return ResearchMode()
    return DirectMode(model=model)


def fallback_mode(reason: str, settings: Settings) -> FallbackMode:
    return FallbackMode(model=settings.fallback_model, reason=reason)
