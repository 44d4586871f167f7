# backend/collabit/db/crud.py
"""
Read/write helpers over the survey entities.
Usage (with context manager):
    from .session import session_scope
    with session_scope() as s:
        record = get_survey_record(s, 42)

Helpers never commit; the caller's session_scope owns the transaction.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from ..core.config import DEFAULT_OPTIONS, SKILL_CODES
from ..core.errors import ConfigurationMissingError, NotFoundError
from .models import (
    AggregateScore,
    Contributor,
    Membership,
    Project,
    SkillDescription,
    SkillFeedback,
    SurveyRecord,
)

logger = logging.getLogger(__name__)


# ----------------- Projects / survey records -----------------

def find_project(session: Session, title: str, organization: str) -> Optional[Project]:
    q = select(Project).where(Project.title == title, Project.organization == organization).limit(1)
    return session.execute(q).scalars().first()


def get_survey_record(session: Session, survey_record_id: int, *, for_update: bool = False) -> SurveyRecord:
    q = select(SurveyRecord).where(SurveyRecord.id == survey_record_id)
    if for_update:
        q = q.with_for_update()
    record = session.execute(q).scalars().first()
    if record is None:
        raise NotFoundError(f"Survey record {survey_record_id} does not exist", {"survey_record_id": survey_record_id})
    return record


def find_survey_record(session: Session, project_id: int, owner_id: str) -> Optional[SurveyRecord]:
    q = select(SurveyRecord).where(SurveyRecord.project_id == project_id, SurveyRecord.owner_id == owner_id).limit(1)
    return session.execute(q).scalars().first()


def list_owner_records(session: Session, owner_id: str) -> Sequence[SurveyRecord]:
    q = select(SurveyRecord).where(SurveyRecord.owner_id == owner_id).order_by(SurveyRecord.id)
    return session.execute(q).scalars().all()


def load_chain(session: Session, project_id: int) -> List[SurveyRecord]:
    """All survey records of a project, ordered by id ascending."""
    q = select(SurveyRecord).where(SurveyRecord.project_id == project_id).order_by(SurveyRecord.id.asc())
    return list(session.execute(q).scalars().all())


def add_to_counters(session: Session, survey_record_id: int, amounts: Dict[str, int]) -> int:
    """
    Atomic `col = col + n` on a survey record. Returns affected row count.
    Keys must be SurveyRecord column names.
    """
    values = {name: getattr(SurveyRecord, name) + int(n) for name, n in amounts.items() if n}
    if not values:
        return 0
    stmt = update(SurveyRecord).where(SurveyRecord.id == survey_record_id).values(**values)
    return session.execute(stmt).rowcount


# ----------------- Contributors / memberships -----------------

def get_contributor(session: Session, handle: str) -> Optional[Contributor]:
    return session.get(Contributor, handle)


def project_member_handles(session: Session, project_id: int) -> set[str]:
    q = select(Membership.contributor_handle).where(Membership.project_id == project_id)
    return set(session.execute(q).scalars().all())


def memberships_of_record(session: Session, survey_record_id: int) -> Sequence[Membership]:
    q = select(Membership).where(Membership.survey_record_id == survey_record_id).order_by(Membership.id)
    return session.execute(q).scalars().all()


def memberships_up_to(session: Session, project_id: int, survey_record_id: int) -> Sequence[Membership]:
    """Memberships of the project known as of `survey_record_id`, in creation order."""
    q = (
        select(Membership)
        .where(Membership.project_id == project_id, Membership.survey_record_id <= survey_record_id)
        .order_by(Membership.id)
    )
    return session.execute(q).scalars().all()


def delete_project_memberships(session: Session, project_id: int) -> int:
    return session.execute(delete(Membership).where(Membership.project_id == project_id)).rowcount


def delete_record_memberships(session: Session, survey_record_id: int) -> int:
    return session.execute(delete(Membership).where(Membership.survey_record_id == survey_record_id)).rowcount


# ----------------- Aggregate singleton -----------------

def get_aggregate_score(session: Session, *, for_update: bool = False) -> AggregateScore:
    q = select(AggregateScore).where(AggregateScore.id == DEFAULT_OPTIONS["aggregate_score_id"])
    if for_update:
        q = q.with_for_update()
    row = session.execute(q).scalars().first()
    if row is None:
        raise ConfigurationMissingError("Aggregate score row is not seeded; run seed_reference_data() first")
    return row


def ensure_aggregate_score(session: Session) -> AggregateScore:
    row = session.get(AggregateScore, DEFAULT_OPTIONS["aggregate_score_id"])
    if row is None:
        row = AggregateScore(
            id=DEFAULT_OPTIONS["aggregate_score_id"],
            total_participant=0,
            **{code: 0 for code in SKILL_CODES},
        )
        session.add(row)
        session.flush()
        logger.info("Seeded aggregate score singleton id=%s", row.id)
    return row


# ----------------- Reference data -----------------

DEFAULT_DESCRIPTIONS: Dict[str, Dict[str, str]] = {
    "sympathy": {"name": "공감", "description": "Understands teammates' situations and feelings."},
    "listening": {"name": "경청", "description": "Listens to others' opinions to the end."},
    "expression": {"name": "표현", "description": "Delivers ideas clearly and respectfully."},
    "problem_solving": {"name": "문제해결", "description": "Finds the core of a problem and drives it to resolution."},
    "conflict_resolution": {"name": "갈등해결", "description": "Mediates disagreements toward a shared outcome."},
    "leadership": {"name": "리더십", "description": "Sets direction and motivates the team."},
}

DEFAULT_FEEDBACK: List[Dict[str, object]] = [
    fb
    for code, meta in DEFAULT_DESCRIPTIONS.items()
    for fb in (
        {"code": code, "name": meta["name"], "positive": True,
         "feedback": f"Your {code.replace('_', ' ')} is rated above the community average. Keep it up."},
        {"code": code, "name": meta["name"], "positive": False,
         "feedback": f"Your {code.replace('_', ' ')} is rated below the community average. Worth focusing on next."},
    )
]


def descriptions_by_code(session: Session) -> Dict[str, SkillDescription]:
    return {d.code: d for d in session.execute(select(SkillDescription)).scalars().all()}


def feedback_by_code(session: Session) -> Dict[str, List[SkillFeedback]]:
    grouped: Dict[str, List[SkillFeedback]] = {}
    for fb in session.execute(select(SkillFeedback).order_by(SkillFeedback.id)).scalars().all():
        grouped.setdefault(fb.code, []).append(fb)
    return grouped


def seed_reference_data(
    session: Session,
    descriptions: Optional[Dict[str, Dict[str, str]]] = None,
    feedback: Optional[Iterable[Dict[str, object]]] = None,
) -> None:
    """
    Idempotent bootstrap: skill descriptions, feedback texts and the aggregate singleton.
    Existing rows are left untouched.
    """
    existing = descriptions_by_code(session)
    for code, meta in (descriptions or DEFAULT_DESCRIPTIONS).items():
        if code not in existing:
            session.add(SkillDescription(code=code, name=meta["name"], description=meta["description"]))

    if not session.execute(select(SkillFeedback.id).limit(1)).first():
        for fb in (feedback if feedback is not None else DEFAULT_FEEDBACK):
            session.add(SkillFeedback(**fb))

    ensure_aggregate_score(session)
    session.flush()
