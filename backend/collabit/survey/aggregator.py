# backend/collabit/survey/aggregator.py
"""
Skill averages (personal vs. global) and the hexagon feedback comparison.
average = round(total / participant, 1), 0.0 when participant == 0
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Mapping

from sqlalchemy.orm import Session

from ..core.config import DEFAULT_OPTIONS, SKILL_CODES
from ..core.errors import ConfigurationMissingError, InvalidStateError
from ..db import crud
from .schemas import FeedbackItem, HexagonComparison, SkillData

logger = logging.getLogger(__name__)


def _round_half_up(value: Decimal) -> float:
    step = Decimal(1).scaleb(-DEFAULT_OPTIONS["average_decimals"])
    return float(value.quantize(step, rounding=ROUND_HALF_UP))


def average_scores(totals: Mapping[str, int], participant: int) -> Dict[str, float]:
    if participant <= 0:
        return {code: 0.0 for code in SKILL_CODES}
    return {code: _round_half_up(Decimal(totals[code]) / Decimal(participant)) for code in SKILL_CODES}


def personal_average(session: Session, survey_record_id: int) -> Dict[str, float]:
    record = crud.get_survey_record(session, survey_record_id)
    if record.completed_at is None:
        raise InvalidStateError(
            "Results are available only after the survey is closed", {"survey_record_id": survey_record_id}
        )
    return average_scores({code: getattr(record, code) for code in SKILL_CODES}, record.participant)


def global_average(session: Session) -> Dict[str, float]:
    row = crud.get_aggregate_score(session)
    return average_scores({code: int(getattr(row, code)) for code in SKILL_CODES}, int(row.total_participant))


def personal_average_by_name(session: Session, survey_record_id: int) -> Dict[str, float]:
    scores = personal_average(session, survey_record_id)
    descriptions = crud.descriptions_by_code(session)
    missing = [code for code in scores if code not in descriptions]
    if missing:
        raise ConfigurationMissingError(f"No skill description for {missing}")
    return {descriptions[code].name: score for code, score in scores.items()}


def skill_data(session: Session, scores: Mapping[str, float]) -> List[SkillData]:
    descriptions = crud.descriptions_by_code(session)
    out: List[SkillData] = []
    for code, score in scores.items():
        desc = descriptions.get(code)
        if desc is None:
            raise ConfigurationMissingError(f"No skill description for code '{code}'")
        out.append(SkillData(code=code, name=desc.name, description=desc.description, score=score))
    return out


def hexagon_comparison(session: Session, survey_record_id: int) -> HexagonComparison:
    personal = personal_average(session, survey_record_id)
    overall = global_average(session)
    feedback = crud.feedback_by_code(session)

    above: List[FeedbackItem] = []
    below: List[FeedbackItem] = []
    for code in SKILL_CODES:
        is_above = personal[code] >= overall[code]
        match = next((f for f in feedback.get(code, []) if f.positive == is_above), None)
        if match is None:
            raise ConfigurationMissingError(
                f"No {'positive' if is_above else 'negative'} feedback configured for '{code}'"
            )
        (above if is_above else below).append(FeedbackItem(code=code, name=match.name, feedback=match.feedback))

    logger.debug(
        "Hexagon for survey_record=%s: %d above, %d below", survey_record_id, len(above), len(below)
    )
    return HexagonComparison(
        personal_skill_data=skill_data(session, personal),
        above_average=above,
        below_average=below,
    )
