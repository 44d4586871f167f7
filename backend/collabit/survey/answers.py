# backend/collabit/survey/answers.py
"""
Answer submission: the write path that feeds the reconciler.

Skill totals are added atomically on the row. The answer itself is counted
through the owner's cache signal, raised only after the transaction commits
so a rolled-back answer never leaves a signal behind. When the cache is down
at that point the answer is counted directly on participant in a follow-up
transaction.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.engine import Connection, Engine
from sqlalchemy.orm import Session

from ..core.errors import DependencyUnavailableError, InvalidStateError, OwnershipViolationError
from ..db import crud
from ..db.session import call_after_commit
from .contributors import effective_handles
from .fanout import NotificationFanout
from .notifications import NotificationCache
from .schemas import SurveyAnswer

logger = logging.getLogger(__name__)


def submit_answer(
    session: Session,
    cache: NotificationCache,
    survey_record_id: int,
    answer: SurveyAnswer,
    fanout: Optional[NotificationFanout] = None,
) -> None:
    """Add one respondent's scores to the record. The owner is signalled on commit."""
    record = crud.get_survey_record(session, survey_record_id)
    if record.completed_at is not None:
        raise InvalidStateError("The survey of this project is already closed", {"survey_record_id": record.id})

    handle = answer.respondent_handle
    if handle == record.owner_handle or handle not in effective_handles(session, record):
        logger.error("Handle %s may not answer survey_record=%s", handle, record.id)
        raise OwnershipViolationError(
            "Only contributors of this project can answer its survey", {"survey_record_id": record.id}
        )

    crud.add_to_counters(session, record.id, answer.scores)
    session.flush()

    call_after_commit(session, publish_answer, session.get_bind(), cache, fanout, record.owner_id, record.id, handle)
    logger.info("Answer from %s recorded on survey_record=%s", handle, record.id)


def publish_answer(
    bind: Engine | Connection,
    cache: NotificationCache,
    fanout: Optional[NotificationFanout],
    owner_id: str,
    survey_record_id: int,
    handle: str,
) -> bool:
    """
    Signal a committed answer to the owner. Returns True when it went through the
    cache, False when it was counted directly on participant instead.
    """
    try:
        cache.raise_signal(owner_id, survey_record_id)
        signalled = True
    except DependencyUnavailableError:
        logger.warning("Cache unavailable; counting answer on survey_record=%s directly", survey_record_id)
        with Session(bind=bind) as s, s.begin():
            crud.add_to_counters(s, survey_record_id, {"participant": 1})
        signalled = False

    cache.clear_request(handle, survey_record_id)
    if fanout is not None:
        fanout.send_new_survey_response(owner_id, survey_record_id)
    return signalled
