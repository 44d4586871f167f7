# backend/collabit/survey/fanout.py
"""
In-memory registry of push channels (one per recipient) and the events
pushed through it. Channel lifecycle belongs to the transport; this module
only registers, sends, and drops channels that fail.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
from typing import Any, Dict, Iterator, Optional, Protocol

from .notifications import NotificationCache

logger = logging.getLogger(__name__)

NEW_SURVEY_RESPONSE = "newSurveyResponse"
NEW_SURVEY_REQUEST = "newSurveyRequest"


class PushChannel(Protocol):
    def send(self, event_name: str, payload: Any) -> bool: ...

    def close(self) -> None: ...


class QueueChannel:
    """
    Server-sent-events channel backed by a thread-safe queue.
    The HTTP layer iterates `stream()`; `send()` is called from request threads.
    """

    def __init__(self, heartbeat_seconds: float = 15.0, maxsize: int = 256):
        self._queue: "queue.Queue[Optional[str]]" = queue.Queue(maxsize=maxsize)
        self._heartbeat = heartbeat_seconds
        self.closed = False

    def send(self, event_name: str, payload: Any) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(f"event: {event_name}\ndata: {json.dumps(payload)}\n\n")
        except queue.Full:
            return False
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            pass

    def stream(self) -> Iterator[str]:
        while True:
            try:
                item = self._queue.get(timeout=self._heartbeat)
            except queue.Empty:
                if self.closed:
                    break
                yield ": keep-alive\n\n"
                continue
            if item is None:
                break
            yield item


class NotificationFanout:
    """recipient id -> open channel. Missing entry means 'not reachable right now'."""

    def __init__(self) -> None:
        self._channels: Dict[str, PushChannel] = {}
        self._lock = threading.Lock()

    def register(self, recipient_id: str, channel: PushChannel) -> None:
        with self._lock:
            previous = self._channels.get(recipient_id)
            self._channels[recipient_id] = channel
        if previous is not None and previous is not channel:
            previous.close()
        logger.debug("Channel registered for %s", recipient_id)

    def unregister(self, recipient_id: str, channel: Optional[PushChannel] = None) -> None:
        """Drop the recipient's channel; with `channel` given, only if it is still the registered one."""
        with self._lock:
            current = self._channels.get(recipient_id)
            if current is None or (channel is not None and current is not channel):
                return
            del self._channels[recipient_id]
        current.close()

    def is_connected(self, recipient_id: str) -> bool:
        with self._lock:
            return recipient_id in self._channels

    def connected_count(self) -> int:
        with self._lock:
            return len(self._channels)

    def notify(self, recipient_id: str, event_name: str, payload: Any) -> bool:
        """Push one event. Returns False if nobody is listening or the channel died."""
        with self._lock:
            channel = self._channels.get(recipient_id)
        if channel is None:
            return False

        try:
            ok = channel.send(event_name, payload)
        except Exception:
            logger.warning("Push of %s to %s failed", event_name, recipient_id, exc_info=True)
            ok = False

        if not ok:
            logger.warning("Dropping dead channel of %s", recipient_id)
            self.unregister(recipient_id, channel)
        return ok

    def send_new_survey_response(self, owner_id: str, survey_record_id: int) -> bool:
        return self.notify(owner_id, NEW_SURVEY_RESPONSE, survey_record_id)

    def send_new_survey_request(self, handle: str, survey_record_ids: list[int]) -> bool:
        return self.notify(handle, NEW_SURVEY_REQUEST, survey_record_ids)

    def send_header_notification(self, recipient_id: str, cache: NotificationCache) -> bool:
        """Snapshot of pending survey requests and records with unread responses."""
        if not self.is_connected(recipient_id):
            logger.debug("No channel for %s; header notification skipped", recipient_id)
            return False
        requests = cache.pending_requests(recipient_id)
        responses = sorted(cache.peek_all(recipient_id))
        return (
            self.notify(recipient_id, NEW_SURVEY_REQUEST, requests)
            and self.notify(recipient_id, NEW_SURVEY_RESPONSE, responses)
        )
