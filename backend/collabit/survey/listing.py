# backend/collabit/survey/listing.py
"""
Read views over the owner's survey records (project list, main page, added repos).
Badges come from NotificationCache.peek_all and never mutate state.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from ..db import crud
from ..db.models import SurveyRecord
from .contributors import effective_contributors
from .notifications import NotificationCache
from .schemas import AddedProject, ContributorOut, OrganizationProjects, ProjectDetail, SortOrder

logger = logging.getLogger(__name__)


def participation_rate(record: SurveyRecord) -> float:
    if record.total == 0:
        return 0.0
    return round(record.participant / record.total * 100, 1)


def _detail(session: Session, record: SurveyRecord, badges: Dict[int, bool]) -> ProjectDetail:
    return ProjectDetail(
        code=record.id,
        title=record.project.title,
        organization=record.project.organization,
        participant=record.participant,
        total=record.total,
        is_done=record.is_done,
        new_survey_response=badges.get(record.id, False),
        created_at=record.created_at,
        contributors=[
            ContributorOut(handle=c.handle, profile_image=c.profile_image)
            for c in effective_contributors(session, record)
        ],
        participation_rate=participation_rate(record),
    )


def list_projects(
    session: Session,
    cache: NotificationCache,
    owner_id: str,
    keyword: Optional[str] = None,
    sort: SortOrder = SortOrder.LATEST,
) -> List[OrganizationProjects]:
    """Owner's records grouped by organization, open ones first inside each group."""
    records = list(crud.list_owner_records(session, owner_id))
    if keyword and keyword.strip():
        needle = keyword.strip().lower()
        records = [r for r in records if needle in r.project.title.lower()]

    badges = cache.peek_all(owner_id)
    groups: Dict[str, List[SurveyRecord]] = {}
    for record in records:
        groups.setdefault(record.project.organization, []).append(record)

    result: List[OrganizationProjects] = []
    for organization, members in groups.items():
        details = [_detail(session, r, badges) for r in members]
        if sort == SortOrder.PARTICIPATION:
            details.sort(key=lambda d: (d.is_done, -d.participation_rate))
        else:
            details.sort(key=lambda d: (d.is_done, -d.code))
        result.append(
            OrganizationProjects(
                organization=organization,
                organization_image=members[0].project.organization_image,
                projects=details,
            )
        )
    logger.info("Listed %d organizations for %s", len(result), owner_id)
    return result


def list_main_projects(session: Session, cache: NotificationCache, owner_id: str) -> List[ProjectDetail]:
    """Flat list: open first, then records with a new response, newest first."""
    badges = cache.peek_all(owner_id)
    details = [_detail(session, r, badges) for r in crud.list_owner_records(session, owner_id)]
    details.sort(key=lambda d: (d.is_done, not d.new_survey_response, -d.code))
    return details


def list_added_projects(session: Session, owner_id: str) -> List[AddedProject]:
    return [
        AddedProject(organization=r.project.organization, title=r.project.title)
        for r in crud.list_owner_records(session, owner_id)
    ]
