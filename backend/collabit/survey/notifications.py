# backend/collabit/survey/notifications.py
"""
Notification cache + reconciler.

The cache holds short-lived counters keyed by
    newSurveyResponse::<recipient>::<survey_record_id>  -> answers not yet folded
    newSurveyRequest::<handle>::<survey_record_id>      -> pending survey request flag

Reconciliation is drain-then-apply:
  1) drain_*  atomically reads and removes signals (MULTI/EXEC GET+DEL per key)
  2) fold_*   adds the drained counts to SurveyRecord.participant in the caller's transaction
If the caller's transaction rolls back instead of committing, the drained
counts are written back with `restore()`.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, List, Mapping, Optional

import redis
from sqlalchemy.orm import Session

from ..core.config import DEFAULT_OPTIONS, get_redis_url
from ..core.errors import DependencyUnavailableError, OwnershipViolationError
from ..db import crud
from ..db.session import call_after_rollback

logger = logging.getLogger(__name__)

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def connect_cache(url: str | None = None) -> redis.Redis:
    """Redis client with str responses. No connection is opened until first use."""
    return redis.Redis.from_url(url or get_redis_url(), decode_responses=True, socket_timeout=2.0)


class NotificationCache:
    """Thin, namespaced wrapper around the Redis client."""

    def __init__(
        self,
        client: redis.Redis,
        response_prefix: str = DEFAULT_OPTIONS["response_key_prefix"],
        request_prefix: str = DEFAULT_OPTIONS["request_key_prefix"],
        separator: str = DEFAULT_OPTIONS["key_separator"],
    ):
        self.client = client
        self.response_prefix = response_prefix
        self.request_prefix = request_prefix
        self.sep = separator

    # ---------- keys ----------

    def response_key(self, recipient_id: str, survey_record_id: int) -> str:
        return f"{self.response_prefix}{recipient_id}{self.sep}{survey_record_id}"

    def request_key(self, handle: str, survey_record_id: int) -> str:
        return f"{self.request_prefix}{handle}{self.sep}{survey_record_id}"

    def _scan(self, prefix: str, owner: str) -> Dict[str, int]:
        """
        Keys of exactly `prefix + owner + sep + <record id>`, mapped to the record id.
        The owner is an opaque string: glob characters are escaped and keys that
        only share a prefix with it (e.g. `alice::x::9` for `alice`) are skipped.
        """
        head = f"{prefix}{owner}{self.sep}"
        pattern = _GLOB_SPECIAL.sub(r"\\\1", head) + "*"
        exact = re.compile(re.escape(head) + r"([0-9]+)")
        found: Dict[str, int] = {}
        for key in self.client.scan_iter(match=pattern, count=100):
            m = exact.fullmatch(key)
            if m is None:
                logger.debug("Skipping cache key %s (not owned by %s)", key, owner)
                continue
            found[key] = int(m.group(1))
        return found

    def _getdel(self, key: str) -> Optional[str]:
        # GET+DEL inside MULTI/EXEC: a concurrent drain of the same key sees None
        pipe = self.client.pipeline(transaction=True)
        pipe.get(key)
        pipe.delete(key)
        value, _ = pipe.execute()
        return value

    # ---------- response signals ----------

    def raise_signal(self, recipient_id: str, survey_record_id: int, amount: int = 1) -> int:
        """Record `amount` new answers. Raises DependencyUnavailableError if the cache is down."""
        try:
            return int(self.client.incrby(self.response_key(recipient_id, survey_record_id), amount))
        except redis.RedisError as e:
            raise DependencyUnavailableError(f"Notification cache unavailable: {e}", dependency="cache") from e

    def restore(self, recipient_id: str, counts: Mapping[int, int]) -> None:
        """Write drained counts back after a failed fold. Best effort."""
        for survey_record_id, count in counts.items():
            if count <= 0:
                continue
            try:
                self.client.incrby(self.response_key(recipient_id, survey_record_id), count)
            except redis.RedisError:
                logger.error(
                    "Could not restore %d drained answers for recipient=%s survey_record=%s",
                    count, recipient_id, survey_record_id, exc_info=True,
                )

    def peek_all(self, recipient_id: str) -> Dict[int, bool]:
        """survey_record_id -> True for every pending signal. Empty if the cache is unavailable."""
        try:
            keys = self._scan(self.response_prefix, recipient_id)
        except redis.RedisError:
            logger.warning("Notification cache unavailable; peek_all(%s) returns empty", recipient_id, exc_info=True)
            return {}
        return {record_id: True for record_id in keys.values()}

    def drain_all(self, recipient_id: str) -> Dict[int, int]:
        """Atomically take every signal of the recipient. Empty if the cache is unavailable."""
        drained: Dict[int, int] = {}
        try:
            for key, record_id in self._scan(self.response_prefix, recipient_id).items():
                value = self._getdel(key)
                if value is not None:
                    drained[record_id] = drained.get(record_id, 0) + int(value)
        except redis.RedisError:
            logger.warning(
                "Notification cache error after draining %d keys for recipient=%s",
                len(drained), recipient_id, exc_info=True,
            )
        logger.debug("Drained %d signals for recipient=%s", len(drained), recipient_id)
        return drained

    def drain_one(self, recipient_id: str, survey_record_id: int, *, strict: bool = False) -> Optional[int]:
        """
        Atomically take one signal. None when absent.
        With strict=True a cache outage raises DependencyUnavailableError instead of returning None.
        """
        key = self.response_key(recipient_id, survey_record_id)
        try:
            value = self._getdel(key)
        except redis.RedisError as e:
            if strict:
                raise DependencyUnavailableError(f"Notification cache unavailable: {e}", dependency="cache") from e
            logger.warning("Notification cache unavailable; drain_one(%s) skipped", key, exc_info=True)
            return None
        return int(value) if value is not None else None

    # ---------- survey request signals ----------

    def add_request(self, handle: str, survey_record_id: int) -> bool:
        try:
            self.client.set(self.request_key(handle, survey_record_id), 1)
            return True
        except redis.RedisError:
            logger.warning("Notification cache unavailable; survey request for %s not stored", handle, exc_info=True)
            return False

    def clear_request(self, handle: str, survey_record_id: int) -> None:
        try:
            self.client.delete(self.request_key(handle, survey_record_id))
        except redis.RedisError:
            logger.warning("Notification cache unavailable; survey request for %s not cleared", handle, exc_info=True)

    def pending_requests(self, handle: str) -> List[int]:
        try:
            keys = self._scan(self.request_prefix, handle)
        except redis.RedisError:
            logger.warning("Notification cache unavailable; no survey requests for %s", handle, exc_info=True)
            return []
        return sorted(keys.values())


# --- reconciliation (drain-then-apply) ----------------------------------------

def fold_counts(session: Session, owner_id: str, counts: Mapping[int, int]) -> Dict[int, int]:
    """
    Add drained counts to participant of the owner's records.
    Counts for records the owner no longer has are dropped. Returns what was applied.
    """
    owned = {r.id for r in crud.list_owner_records(session, owner_id)}
    applied: Dict[int, int] = {}
    for survey_record_id, count in counts.items():
        if survey_record_id not in owned:
            logger.warning(
                "Dropping %d drained answers for survey_record=%s (not owned by %s)", count, survey_record_id, owner_id
            )
            continue
        crud.add_to_counters(session, survey_record_id, {"participant": count})
        applied[survey_record_id] = count
    session.flush()
    return applied


def clear_all_notifications(session: Session, cache: NotificationCache, owner_id: str) -> Dict[int, int]:
    """Drain every pending response signal of the owner and fold it into participant."""
    drained = cache.drain_all(owner_id)
    if not drained:
        return {}
    call_after_rollback(session, cache.restore, owner_id, drained)
    applied = fold_counts(session, owner_id, drained)
    logger.info("Folded notifications for %s: %s", owner_id, applied)
    return applied


def clear_notification(session: Session, cache: NotificationCache, owner_id: str, survey_record_id: int) -> int:
    """Drain one record's signal (owner only) and fold it. Returns the folded count."""
    record = crud.get_survey_record(session, survey_record_id)
    if record.owner_id != owner_id:
        logger.error("User %s is not the owner of survey_record=%s", owner_id, survey_record_id)
        raise OwnershipViolationError("You do not own this project", {"survey_record_id": survey_record_id})

    count = cache.drain_one(owner_id, survey_record_id)
    if not count:
        return 0
    call_after_rollback(session, cache.restore, owner_id, {survey_record_id: count})
    crud.add_to_counters(session, survey_record_id, {"participant": count})
    session.flush()
    logger.debug("survey_record=%s participant += %d", survey_record_id, count)
    return count
