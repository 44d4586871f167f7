"""Tests for answer submission and survey requests."""

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest
import redis
from pydantic import ValidationError
from sqlalchemy import event

from collabit.core.config import SKILL_CODES
from collabit.core.errors import InvalidStateError, NotFoundError, OwnershipViolationError
from collabit.db import crud
from collabit.db import session as db
from collabit.survey.answers import submit_answer
from collabit.survey.contributors import effective_handles, register_project
from collabit.survey.lifecycle import close_survey
from collabit.survey.notifications import NotificationCache, clear_all_notifications
from collabit.survey.schemas import SurveyAnswer

from conftest import make_request


def _answer(handle, score=4, **overrides):
    scores = {code: score for code in SKILL_CODES}
    scores.update(overrides)
    return SurveyAnswer(respondent_handle=handle, scores=scores)


def _fail_commit(_session):
    raise RuntimeError("commit failed")


class TestSurveyAnswerModel:
    def test_rejects_out_of_range(self):
        with pytest.raises(ValidationError):
            _answer("alice", sympathy=6)

    def test_rejects_missing_or_unknown_codes(self):
        with pytest.raises(ValidationError):
            SurveyAnswer(respondent_handle="alice", scores={"sympathy": 3})
        with pytest.raises(ValidationError):
            _answer("alice", charisma=3)


class TestSubmitAnswer:
    def test_adds_scores_and_raises_signal(self, session, cache, register):
        rid = register("u1", "Acme", "OrgA", ["u1", "alice", "bob"])
        submit_answer(session, cache, rid, _answer("alice", 4))
        submit_answer(session, cache, rid, _answer("bob", 2, leadership=5))
        session.commit()

        record = crud.get_survey_record(session, rid)
        assert record.sympathy == 6
        assert record.leadership == 9
        # participant moves only on reconciliation
        assert record.participant == 0
        assert cache.drain_one("u1", rid) == 2

    def test_signal_waits_for_commit(self, session, cache, register):
        rid = register("u1", "Acme", "OrgA", ["u1", "alice"])
        submit_answer(session, cache, rid, _answer("alice"))
        assert cache.peek_all("u1") == {}
        session.commit()
        assert cache.peek_all("u1") == {rid: True}

    def test_rolled_back_answer_leaves_no_signal(self, session, cache, fanout, register, channel_factory):
        owner_channel = channel_factory()
        fanout.register("u1", owner_channel)
        rid = register("u1", "Acme", "OrgA", ["u1", "alice"], cache=cache)

        submit_answer(session, cache, rid, _answer("alice"), fanout=fanout)
        event.listen(session, "before_commit", _fail_commit)
        try:
            with pytest.raises(RuntimeError):
                session.commit()
            session.rollback()
        finally:
            event.remove(session, "before_commit", _fail_commit)

        record = crud.get_survey_record(session, rid)
        session.refresh(record)
        assert record.sympathy == 0
        assert cache.peek_all("u1") == {}
        assert cache.pending_requests("alice") == [rid]
        assert owner_channel.events == []
        # nothing phantom to fold later
        assert clear_all_notifications(session, cache, "u1") == {}

    def test_answer_then_reconcile(self, session, cache, register):
        rid = register("u1", "Acme", "OrgA", ["u1", "alice", "bob"])
        submit_answer(session, cache, rid, _answer("alice"))
        session.commit()
        clear_all_notifications(session, cache, "u1")
        session.commit()
        assert crud.get_survey_record(session, rid).participant == 1

    def test_cache_down_counts_directly(self, session, register):
        client = MagicMock()
        client.incrby.side_effect = redis.ConnectionError("down")
        client.delete.side_effect = redis.ConnectionError("down")
        rid = register("u1", "Acme", "OrgA", ["u1", "alice"])

        submit_answer(session, NotificationCache(client), rid, _answer("alice", 3))
        session.commit()
        record = crud.get_survey_record(session, rid)
        session.refresh(record)
        assert record.participant == 1
        assert record.sympathy == 3

    def test_clears_request_and_notifies_owner(self, session, cache, fanout, register, channel_factory):
        owner_channel = channel_factory()
        fanout.register("u1", owner_channel)
        rid = register("u1", "Acme", "OrgA", ["u1", "alice"], cache=cache, fanout=fanout)
        assert cache.pending_requests("alice") == [rid]

        submit_answer(session, cache, rid, _answer("alice"), fanout=fanout)
        session.commit()
        assert cache.pending_requests("alice") == []
        assert owner_channel.events == [("newSurveyResponse", rid)]

    def test_non_member_rejected(self, session, cache, register):
        rid = register("u1", "Acme", "OrgA", ["u1", "alice"])
        with pytest.raises(OwnershipViolationError):
            submit_answer(session, cache, rid, _answer("mallory"))
        with pytest.raises(OwnershipViolationError):
            submit_answer(session, cache, rid, _answer("u1"))

    def test_owner_listed_by_earlier_registration_cannot_answer(self, session, cache, register):
        """gh-u1 is a member through u2's record, but owns the later record."""
        register("u2", "Acme", "OrgA", ["gh-u2", "gh-u1"], owner_handle="gh-u2")
        r2 = register("u1", "Acme", "OrgA", ["gh-u1", "alice"], owner_handle="gh-u1")
        record = crud.get_survey_record(session, r2)
        assert record.owner_handle == "gh-u1"
        assert "gh-u1" in effective_handles(session, record)

        with pytest.raises(OwnershipViolationError):
            submit_answer(session, cache, r2, _answer("gh-u1"))
        submit_answer(session, cache, r2, _answer("alice"))

    def test_later_contributor_cannot_answer_older_record(self, session, cache, register):
        r1 = register("u1", "Acme", "OrgA", ["u1", "alice"])
        register("u2", "Acme", "OrgA", ["u2", "bob"])
        with pytest.raises(OwnershipViolationError):
            submit_answer(session, cache, r1, _answer("bob"))

    def test_closed_rejected(self, session, cache, register):
        rid = register("u1", "Acme", "OrgA", ["u1", "alice"])
        close_survey(session, cache, "u1", rid)  # total=1 -> quorum 0
        session.commit()
        with pytest.raises(InvalidStateError):
            submit_answer(session, cache, rid, _answer("alice"))

    def test_missing_record(self, session, cache):
        with pytest.raises(NotFoundError):
            submit_answer(session, cache, 12345, _answer("alice"))


class TestConcurrentAnswers:
    def test_stale_session_does_not_overwrite_totals(self, session, cache, register):
        rid = register("u1", "Acme", "OrgA", ["u1", "alice", "bob"])
        other = db.SessionLocal()
        try:
            stale = crud.get_survey_record(other, rid)
            other.commit()

            submit_answer(session, cache, rid, _answer("alice", 4))
            session.commit()
            assert stale.sympathy == 0
            submit_answer(other, cache, rid, _answer("bob", 3))
            other.commit()
        finally:
            other.close()

        record = crud.get_survey_record(session, rid)
        session.refresh(record)
        assert record.sympathy == 7
        assert cache.drain_one("u1", rid) == 2

    def test_parallel_answers_lose_no_updates(self, file_session_factory, cache):
        handles = [f"dev{i}" for i in range(12)]
        with file_session_factory() as s:
            rid = register_project(s, "u1", make_request("Acme", "OrgA", ["u1", *handles]))
            s.commit()

        def _submit(handle):
            with file_session_factory() as s:
                submit_answer(s, cache, rid, _answer(handle, 2, leadership=5))
                s.commit()

        with ThreadPoolExecutor(max_workers=6) as pool:
            list(pool.map(_submit, handles))

        with file_session_factory() as s:
            record = crud.get_survey_record(s, rid)
            assert record.sympathy == 2 * len(handles)
            assert record.leadership == 5 * len(handles)
        assert cache.drain_one("u1", rid) == len(handles)


class TestSurveyRequests:
    def test_registration_requests_every_known_contributor(self, session, cache, fanout, register, channel_factory):
        alice = channel_factory()
        fanout.register("alice", alice)
        r1 = register("u1", "Acme", "OrgA", ["u1", "alice", "bob"], cache=cache, fanout=fanout)
        r2 = register("u2", "Acme", "OrgA", ["u2", "alice", "carol"], cache=cache, fanout=fanout)

        assert cache.pending_requests("alice") == [r1, r2]
        assert cache.pending_requests("bob") == [r1, r2]
        assert cache.pending_requests("carol") == [r2]
        assert cache.pending_requests("u2") == []
        assert alice.events == [("newSurveyRequest", [r1]), ("newSurveyRequest", [r1, r2])]

    def test_owner_handle_gets_no_request_for_own_record(self, session, cache, register):
        r1 = register("u2", "Acme", "OrgA", ["gh-u2", "gh-u1"], owner_handle="gh-u2", cache=cache)
        register("u1", "Acme", "OrgA", ["gh-u1", "alice"], owner_handle="gh-u1", cache=cache)
        assert cache.pending_requests("gh-u1") == [r1]

    def test_rolled_back_registration_sends_nothing(self, session, cache, fanout, channel_factory):
        alice = channel_factory()
        fanout.register("alice", alice)
        register_project(session, "u1", make_request("Acme", "OrgA", ["u1", "alice"]), cache=cache, fanout=fanout)
        session.rollback()

        assert cache.pending_requests("alice") == []
        assert alice.events == []
