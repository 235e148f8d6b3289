"""
Tests for BulkDispatcher and Throttle — batch ordering, partial failure
isolation, and dispatch spacing.
"""

import asyncio

import pytest

from coach_calendar_sync.models import RemoteApiError
from coach_calendar_sync.models import SessionStatus
from coach_calendar_sync.models import SyncSettings
from coach_calendar_sync.sync.dispatch import BulkDispatcher
from coach_calendar_sync.sync.dispatch import Throttle
from tests.conftest import make_session

RANGE_START = "2025-03-10T00:00:00Z"
RANGE_END = "2025-03-17T00:00:00Z"


def _three_sessions(repository) -> list[str]:
    return [
        make_session(repository, start="2025-03-10T09:00:00Z", email="a@example.com"),
        make_session(repository, start="2025-03-11T09:00:00Z", email="b@example.com"),
        make_session(repository, start="2025-03-12T09:00:00Z", email="c@example.com"),
    ]


def _dispatcher(repository, reconciler, fake_clock, min_interval_ms=1000):
    settings = SyncSettings(client_id="client-123", min_interval_ms=min_interval_ms)
    return BulkDispatcher(
        repository,
        reconciler,
        lambda: settings,
        Throttle(clock=fake_clock, sleep=fake_clock.sleep),
    )


class TestBatch:
    def test_all_sessions_sent_in_start_order(self, repository, reconciler, fake_api, fake_clock):
        # inserted out of order on purpose
        late = make_session(repository, start="2025-03-12T09:00:00Z")
        early = make_session(repository, start="2025-03-10T09:00:00Z")
        dispatcher = _dispatcher(repository, reconciler, fake_clock)

        outcomes = asyncio.run(dispatcher.send_all_in_range(RANGE_START, RANGE_END))

        assert [o.session_id for o in outcomes] == [early, late]
        assert all(o.ok for o in outcomes)
        assert [o.remote_event_id for o in outcomes] == ["evt_1", "evt_2"]
        for _, _, body, send_updates in fake_api.inserts:
            assert send_updates == "all"
            assert "attendees" in body
        assert repository.get_session_with_trainee(late).status == SessionStatus.SENT

    def test_failure_is_isolated(self, repository, reconciler, fake_api, fake_clock):
        """The second of three inserts fails; the other two still succeed."""
        ids = _three_sessions(repository)
        fake_api.fail("insert", RemoteApiError("Quota exceeded for quota metric", 403), on_call=2)
        dispatcher = _dispatcher(repository, reconciler, fake_clock)

        outcomes = asyncio.run(dispatcher.send_all_in_range(RANGE_START, RANGE_END))

        assert [o.ok for o in outcomes] == [True, False, True]
        assert outcomes[1].session_id == ids[1]
        assert "Quota exceeded" in outcomes[1].error
        assert outcomes[1].remote_event_id is None
        assert repository.get_session_with_trainee(ids[1]).status == SessionStatus.PLANNED
        assert repository.get_session_with_trainee(ids[2]).status == SessionStatus.SENT

    def test_sessions_outside_range_are_ignored(self, repository, reconciler, fake_clock):
        make_session(repository, start="2025-03-20T09:00:00Z")
        dispatcher = _dispatcher(repository, reconciler, fake_clock)

        assert asyncio.run(dispatcher.send_all_in_range(RANGE_START, RANGE_END)) == []

    def test_outcome_dicts(self, repository, reconciler, fake_api, fake_clock):
        _three_sessions(repository)
        fake_api.fail("insert", RemoteApiError("boom", 500), on_call=3)
        dispatcher = _dispatcher(repository, reconciler, fake_clock)

        outcomes = asyncio.run(dispatcher.send_all_in_range(RANGE_START, RANGE_END))

        assert outcomes[0].as_dict()["remoteEventId"] == "evt_1"
        assert "error" not in outcomes[0].as_dict()
        failed = outcomes[2].as_dict()
        assert failed["ok"] is False
        assert failed["error"] == "boom"
        assert "remoteEventId" not in failed


class TestThrottle:
    def test_dispatch_starts_are_spaced(self, repository, reconciler, fake_clock):
        """With a 1000 ms interval each dispatch starts at least 1 s after the last."""
        _three_sessions(repository)
        starts: list[float] = []
        original_upsert = reconciler.upsert

        async def recording_upsert(session_id, include_attendee=False):
            starts.append(fake_clock())
            return await original_upsert(session_id, include_attendee=include_attendee)

        reconciler.upsert = recording_upsert
        dispatcher = _dispatcher(repository, reconciler, fake_clock, min_interval_ms=1000)

        asyncio.run(dispatcher.send_all_in_range(RANGE_START, RANGE_END))

        assert len(starts) == 3
        assert starts[1] - starts[0] >= 1.0
        assert starts[2] - starts[1] >= 1.0
        assert fake_clock.sleeps == [1.0, 1.0]

    def test_first_call_does_not_wait(self, fake_clock):
        throttle = Throttle(clock=fake_clock, sleep=fake_clock.sleep)

        asyncio.run(throttle.wait(5.0))

        assert fake_clock.sleeps == []

    def test_only_remaining_interval_is_slept(self, fake_clock):
        throttle = Throttle(clock=fake_clock, sleep=fake_clock.sleep)

        async def scenario():
            await throttle.wait(1.2)
            fake_clock.advance(0.5)
            await throttle.wait(1.2)

        asyncio.run(scenario())

        assert fake_clock.sleeps == [pytest.approx(0.7)]

    def test_spacing_carries_across_batches(self, repository, reconciler, fake_clock):
        make_session(repository, start="2025-03-10T09:00:00Z")
        dispatcher = _dispatcher(repository, reconciler, fake_clock, min_interval_ms=1000)

        async def scenario():
            await dispatcher.send_all_in_range(RANGE_START, RANGE_END)
            await dispatcher.send_all_in_range(RANGE_START, RANGE_END)

        asyncio.run(scenario())

        assert fake_clock.sleeps == [1.0]

    def test_zero_interval_never_sleeps(self, repository, reconciler, fake_clock):
        _three_sessions(repository)
        dispatcher = _dispatcher(repository, reconciler, fake_clock, min_interval_ms=0)

        asyncio.run(dispatcher.send_all_in_range(RANGE_START, RANGE_END))

        assert fake_clock.sleeps == []
