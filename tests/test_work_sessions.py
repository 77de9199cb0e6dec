"""Work session tracker tests."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from shopfloor.models import db
from shopfloor.models.work_session import WorkSession, compute_duration_minutes
from shopfloor.services import work_session_service as wss
from shopfloor.utils.helpers import as_utc

T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


class TestDuration:
    def test_rounded_minutes(self):
        assert compute_duration_minutes(T0, T0 + timedelta(seconds=95)) == 1.58

    def test_never_negative(self):
        assert compute_duration_minutes(T0, T0 - timedelta(minutes=5)) == 0.0

    def test_naive_values_treated_as_utc(self):
        naive = T0.replace(tzinfo=None)
        assert compute_duration_minutes(naive, T0 + timedelta(minutes=30)) == 30.0

    def test_open_session_has_no_duration(self):
        assert compute_duration_minutes(T0, None) is None


class TestSessions:
    @pytest.fixture()
    def step(self, make_order):
        order = make_order()
        return order.flow_steps[0]

    def test_open_then_close(self, step, people):
        ws = wss.open_session(step.order_id, step.station_id, 1, people.tech,
                              started_by=people.tech, authorized_via="assigned", started_at=T0)
        closed = wss.close_session(step.order_id, step.station_id, 1, people.tech,
                                   completed_at=T0 + timedelta(minutes=45))
        assert closed.id == ws.id
        assert closed.duration_minutes == 45.0
        assert as_utc(closed.completed_at) == T0 + timedelta(minutes=45)

    def test_reopen_closes_stale_session(self, step, people):
        wss.open_session(step.order_id, step.station_id, 1, people.tech, started_at=T0)
        wss.open_session(step.order_id, step.station_id, 1, people.tech,
                         started_at=T0 + timedelta(minutes=10))
        sessions = wss.list_sessions(step.order_id)
        assert len(sessions) == 2
        assert sessions[0].duration_minutes == 10.0
        assert sessions[1].is_open

    def test_unique_open_session_per_technician(self, step, people):
        for _ in range(2):
            db.session.add(WorkSession(order_id=step.order_id, station_id=step.station_id,
                                       step_order=1, technician_id=people.tech, started_at=T0))
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()

    def test_close_without_match_returns_none(self, step, people):
        assert wss.close_session(step.order_id, step.station_id, 1, people.tech) is None

    def test_close_ambiguous_returns_none(self, step, people):
        wss.open_session(step.order_id, step.station_id, 1, people.tech, started_at=T0)
        wss.open_session(step.order_id, step.station_id, 1, people.other_tech, started_at=T0)
        assert wss.close_session(step.order_id, step.station_id, 1, people.painter) is None

    def test_close_open_sessions_does_not_commit(self, step, people):
        wss.open_session(step.order_id, step.station_id, 1, people.tech, started_at=T0)
        assert wss.close_open_sessions(step.order_id, T0 + timedelta(minutes=1)) == 1
        db.session.rollback()
        assert WorkSession.query.one().is_open

    def test_technician_summary(self, step, people):
        wss.open_session(step.order_id, step.station_id, 1, people.tech, started_at=T0)
        wss.close_session(step.order_id, step.station_id, 1, people.tech,
                          completed_at=T0 + timedelta(minutes=20))
        wss.open_session(step.order_id, step.station_id, 1, people.tech,
                         started_at=T0 + timedelta(minutes=30))

        summary = wss.technician_summary(people.tech)
        assert summary == {
            "technician_id": people.tech,
            "closed_sessions": 1,
            "open_sessions": 1,
            "total_minutes": 20.0,
        }

    def test_list_filtered_by_technician(self, step, people):
        wss.open_session(step.order_id, step.station_id, 1, people.tech, started_at=T0)
        wss.open_session(step.order_id, step.station_id, 1, people.other_tech, started_at=T0)
        only = wss.list_sessions(step.order_id, technician_id=people.other_tech)
        assert [s.technician_id for s in only] == [people.other_tech]
