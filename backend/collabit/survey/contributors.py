# backend/collabit/survey/contributors.py
"""
Contributor graph: Project / SurveyRecord / Contributor / Membership rows.

Registration
  - find-or-create Project by (title, organization); an existing project's image is not updated
  - one SurveyRecord per (Project, owner)
  - total = len(contributors) - 1 (owner excluded), never recalculated
  - a Membership is created only for handles the project has not seen yet

A SurveyRecord's effective contributors are all memberships of its project
with survey_record_id <= its own id, in membership creation order.

Deletion re-homes memberships so later records keep what they "knew".
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.errors import DuplicateRegistrationError, InvalidStateError, OwnershipViolationError
from ..db import crud
from ..db.models import Contributor, Membership, Project, SurveyRecord
from ..db.session import call_after_commit
from .fanout import NotificationFanout
from .notifications import NotificationCache
from .schemas import ContributorIn, RegisterProjectRequest

logger = logging.getLogger(__name__)


# ---------- validation ----------

def owned_record(session: Session, owner_id: str, survey_record_id: int, *, for_update: bool = False) -> SurveyRecord:
    """Load a survey record and make sure `owner_id` registered it."""
    record = crud.get_survey_record(session, survey_record_id, for_update=for_update)
    if record.owner_id != owner_id:
        logger.error(
            "User %s is not the owner of survey_record=%s (owner=%s)", owner_id, survey_record_id, record.owner_id
        )
        raise OwnershipViolationError("You do not own this project", {"survey_record_id": survey_record_id})
    return record


# ---------- find-or-create ----------

def _find_or_create_project(session: Session, title: str, organization: str, image: Optional[str]) -> Project:
    project = crud.find_project(session, title, organization)
    if project is not None:
        logger.debug("Existing project id=%s for %s/%s", project.id, organization, title)
        return project
    try:
        with session.begin_nested():
            project = Project(title=title, organization=organization, organization_image=image)
            session.add(project)
    except IntegrityError:
        # registered concurrently by another user
        project = crud.find_project(session, title, organization)
        if project is None:
            raise
        return project
    logger.debug("New project id=%s for %s/%s", project.id, organization, title)
    return project


def _find_or_create_contributor(session: Session, entry: ContributorIn) -> Contributor:
    contributor = crud.get_contributor(session, entry.handle)
    if contributor is not None:
        return contributor
    try:
        with session.begin_nested():
            contributor = Contributor(handle=entry.handle, profile_image=entry.profile_image)
            session.add(contributor)
    except IntegrityError:
        contributor = crud.get_contributor(session, entry.handle)
        if contributor is None:
            raise
    return contributor


# ---------- registration ----------

def register_project(
    session: Session,
    owner_id: str,
    request: RegisterProjectRequest,
    owner_handle: Optional[str] = None,
    cache: Optional[NotificationCache] = None,
    fanout: Optional[NotificationFanout] = None,
) -> int:
    """
    Register a repository for `owner_id` and return the new survey record id.
    `owner_handle` is the owner's source-control handle (defaults to owner_id); it is
    stored on the record and excluded from memberships. With a cache/fanout, every
    known contributor gets a survey request once the transaction commits.
    """
    owner_handle = owner_handle or owner_id
    logger.info(
        "Registering %s/%s for %s with %d contributors",
        request.organization, request.title, owner_id, len(request.contributors),
    )

    project = _find_or_create_project(session, request.title, request.organization, request.organization_image)

    existing = crud.find_survey_record(session, project.id, owner_id)
    if existing is not None:
        logger.warning(
            "Duplicate registration project=%s survey_record=%s owner=%s", project.id, existing.id, owner_id
        )
        raise DuplicateRegistrationError(
            "Repository already registered", {"project_id": project.id, "survey_record_id": existing.id}
        )

    record = SurveyRecord(
        project_id=project.id,
        owner_id=owner_id,
        owner_handle=owner_handle,
        total=len(request.contributors) - 1,
        participant=0,
    )
    try:
        with session.begin_nested():
            session.add(record)
    except IntegrityError as e:
        raise DuplicateRegistrationError("Repository already registered", {"project_id": project.id}) from e

    known = crud.project_member_handles(session, project.id)
    added: List[str] = []
    for entry in request.contributors:
        if entry.handle == owner_handle or entry.handle in known:
            continue
        contributor = _find_or_create_contributor(session, entry)
        session.add(Membership(project_id=project.id, survey_record_id=record.id, contributor_handle=contributor.handle))
        known.add(entry.handle)
        added.append(entry.handle)
    session.flush()

    logger.info(
        "Registered project=%s survey_record=%s total=%d new memberships=%d",
        project.id, record.id, record.total, len(added),
    )

    if cache is not None:
        call_after_commit(session, _request_surveys, cache, fanout, record.id, _requested_handles(session, record))
    return record.id


def _requested_handles(session: Session, record: SurveyRecord) -> List[str]:
    return [h for h in effective_handles(session, record) if h != record.owner_handle]


def _request_surveys(
    cache: NotificationCache,
    fanout: Optional[NotificationFanout],
    survey_record_id: int,
    handles: Iterable[str],
) -> None:
    for handle in handles:
        if cache.add_request(handle, survey_record_id) and fanout is not None:
            fanout.send_new_survey_request(handle, cache.pending_requests(handle))


# ---------- effective contributors ----------

def effective_contributors(session: Session, record: SurveyRecord) -> List[Contributor]:
    """Distinct contributors known as of `record`, in membership creation order."""
    seen: set[str] = set()
    result: List[Contributor] = []
    for m in crud.memberships_up_to(session, record.project_id, record.id):
        if m.contributor_handle in seen:
            continue
        seen.add(m.contributor_handle)
        result.append(m.contributor)
    return result


def effective_handles(session: Session, record: SurveyRecord) -> List[str]:
    return [c.handle for c in effective_contributors(session, record)]


# ---------- deletion ----------

def remove_survey_record(session: Session, owner_id: str, survey_record_id: int) -> str:
    """
    Delete an untouched, open survey record, re-homing its memberships if needed.
    Returns the branch taken: "project", "record", "last" or "transferred".
    Runs inside the caller's transaction: all-or-nothing.
    """
    record = owned_record(session, owner_id, survey_record_id, for_update=True)

    if record.completed_at is not None or record.participant >= 1:
        logger.error(
            "Cannot delete survey_record=%s (participant=%d, completed_at=%s)",
            record.id, record.participant, record.completed_at,
        )
        raise InvalidStateError(
            "A project with participants or a closed survey cannot be deleted",
            {"survey_record_id": record.id, "participant": record.participant},
        )

    project_id = record.project_id
    chain = crud.load_chain(session, project_id)
    index = next(i for i, r in enumerate(chain) if r.id == record.id)
    owned = crud.memberships_of_record(session, record.id)

    if len(chain) == 1:
        removed = crud.delete_project_memberships(session, project_id)
        session.delete(record)
        session.flush()
        session.delete(session.get(Project, project_id))
        session.flush()
        logger.info("Deleted project=%s with its only survey_record=%s (%d memberships)", project_id, record.id, removed)
        return "project"

    if not owned:
        session.delete(record)
        session.flush()
        logger.info("Deleted survey_record=%s (no memberships)", record.id)
        return "record"

    if index == len(chain) - 1:
        removed = crud.delete_record_memberships(session, record.id)
        session.delete(record)
        session.flush()
        logger.info("Deleted last survey_record=%s of project=%s (%d memberships)", record.id, project_id, removed)
        return "last"

    successor = chain[index + 1]
    moved = session.execute(
        update(Membership)
        .where(Membership.survey_record_id == record.id)
        .values(survey_record_id=successor.id)
        .execution_options(synchronize_session="fetch")
    ).rowcount
    session.delete(record)
    session.flush()
    logger.info(
        "Transferred %d memberships from survey_record=%s to %s, then deleted it", moved, record.id, successor.id
    )
    return "transferred"
