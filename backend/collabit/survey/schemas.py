# backend/collabit/survey/schemas.py
"""
Pydantic models exchanged with callers (request bodies and read views).
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..core.config import DEFAULT_OPTIONS, SKILL_CODES

_MIN = DEFAULT_OPTIONS["min_base_score"]
_MAX = DEFAULT_OPTIONS["max_base_score"]


class ContributorIn(BaseModel):
    handle: str = Field(min_length=1, max_length=128)
    profile_image: Optional[str] = None


class RegisterProjectRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    organization: str = Field(min_length=1, max_length=255)
    organization_image: Optional[str] = None
    contributors: List[ContributorIn] = Field(min_length=1)


class SurveyAnswer(BaseModel):
    """One respondent's scores, one integer per skill code."""

    respondent_handle: str = Field(min_length=1)
    scores: Dict[str, int]

    @field_validator("scores")
    @classmethod
    def _check_scores(cls, v: Dict[str, int]) -> Dict[str, int]:
        missing = [c for c in SKILL_CODES if c not in v]
        unknown = [c for c in v if c not in SKILL_CODES]
        if missing or unknown:
            raise ValueError(f"scores must cover exactly {list(SKILL_CODES)} (missing={missing}, unknown={unknown})")
        out_of_range = {c: s for c, s in v.items() if not _MIN <= s <= _MAX}
        if out_of_range:
            raise ValueError(f"scores must be within [{_MIN}, {_MAX}]: {out_of_range}")
        return v


class SortOrder(str, Enum):
    LATEST = "LATEST"
    PARTICIPATION = "PARTICIPATION"


class ContributorOut(BaseModel):
    handle: str
    profile_image: Optional[str] = None


class ProjectDetail(BaseModel):
    code: int
    title: str
    organization: str
    participant: int
    total: int
    is_done: bool
    new_survey_response: bool
    created_at: Optional[datetime] = None
    contributors: List[ContributorOut]
    participation_rate: float


class OrganizationProjects(BaseModel):
    organization: str
    organization_image: Optional[str] = None
    projects: List[ProjectDetail]


class AddedProject(BaseModel):
    organization: str
    title: str


class SkillData(BaseModel):
    code: str
    name: str
    description: str
    score: float


class FeedbackItem(BaseModel):
    code: str
    name: str
    feedback: str


class HexagonComparison(BaseModel):
    min_base_score: int = _MIN
    max_base_score: int = _MAX
    personal_skill_data: List[SkillData]
    above_average: List[FeedbackItem]
    below_average: List[FeedbackItem]
