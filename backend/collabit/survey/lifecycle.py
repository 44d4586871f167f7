# backend/collabit/survey/lifecycle.py
"""
Survey state machine: Open -> Closed (terminal).

close_survey():
  1) ownership
  2) already closed -> InvalidStateError
  3) drain the record's pending response signal (cache outage here is surfaced:
     never close on a stale count); drained answers count toward the quorum and
     go back to the cache if the transaction rolls back
  4) quorum: participant >= total // 2, then fold the drained count into participant
  5) completed_at = now
  6) add participant + skill totals to the aggregate singleton
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..core.config import DEFAULT_OPTIONS, SKILL_CODES
from ..core.errors import InvalidStateError, QuorumNotMetError
from ..db import crud
from ..db.session import call_after_rollback
from ..db.models import AggregateScore, SurveyRecord
from .contributors import owned_record
from .notifications import NotificationCache

logger = logging.getLogger(__name__)


def required_participants(total: int) -> int:
    """Quorum for a record with `total` contributors (integer division: 5 -> 2)."""
    return total // DEFAULT_OPTIONS["quorum_divisor"]


def quorum_met(participant: int, total: int) -> bool:
    return participant >= required_participants(total)


def _fold_into_aggregate(session: Session, record: SurveyRecord) -> None:
    crud.get_aggregate_score(session, for_update=True)
    values = {"total_participant": AggregateScore.total_participant + record.participant}
    for code in SKILL_CODES:
        values[code] = getattr(AggregateScore, code) + getattr(record, code)
    session.execute(
        update(AggregateScore).where(AggregateScore.id == DEFAULT_OPTIONS["aggregate_score_id"]).values(**values)
    )


def close_survey(session: Session, cache: NotificationCache, owner_id: str, survey_record_id: int) -> SurveyRecord:
    record = owned_record(session, owner_id, survey_record_id, for_update=True)

    if record.completed_at is not None:
        logger.error("survey_record=%s already closed at %s", record.id, record.completed_at)
        raise InvalidStateError("The survey of this project is already closed", {"survey_record_id": record.id})

    pending = cache.drain_one(owner_id, record.id, strict=True) or 0
    if pending:
        call_after_rollback(session, cache.restore, owner_id, {record.id: pending})

    participant = record.participant + pending
    required = required_participants(record.total)
    if participant < required:
        logger.error(
            "Quorum not met for survey_record=%s: participant=%d total=%d", record.id, participant, record.total
        )
        raise QuorumNotMetError(
            "At least half of the contributors must answer before the survey can be closed",
            participant=participant,
            required=required,
        )

    if pending:
        crud.add_to_counters(session, record.id, {"participant": pending})
        session.flush()
        session.refresh(record)
        logger.debug("survey_record=%s participant += %d before close", record.id, pending)

    record.completed_at = datetime.now(timezone.utc)
    session.flush()
    _fold_into_aggregate(session, record)
    session.flush()

    logger.info(
        "Closed survey_record=%s with participant=%d/%d", record.id, record.participant, record.total
    )
    return record
