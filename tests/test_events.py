# tests/test_events.py
"""
Event bus behaviour and the inbound compensation handlers.

Run:
    pytest tests/test_events.py -v
"""
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

import mlm_system.events.handlers as handlers
from models import Commission, MatrixPosition
from mlm_system.events.event_bus import EventBus, eventBus, MLMEvents
from mlm_system.events.setup import setup_mlm_event_handlers, teardown_mlm_event_handlers


@pytest.fixture
def handler_sessions(engine, monkeypatch):
    """Handlers open their own sessions on the test database."""
    factory = sessionmaker(bind=engine)
    monkeypatch.setattr(handlers, "get_session", factory)
    return factory


@pytest.fixture
def registered():
    setup_mlm_event_handlers()
    yield eventBus
    teardown_mlm_event_handlers()


class TestEventBus:

    def test_singleton(self):
        assert EventBus() is eventBus

    def test_failing_handler_does_not_stop_others(self, run):
        calls = []

        def broken(data):
            raise ValueError("boom")

        async def working(data):
            calls.append(data["value"])

        eventBus.subscribe("test.event", broken)
        eventBus.subscribe("test.event", working)

        succeeded = run(eventBus.emit("test.event", {"value": 1}))

        assert succeeded == 1
        assert calls == [1]

    def test_subscribe_is_idempotent(self):
        def handler(data):
            pass

        eventBus.subscribe("test.event", handler)
        eventBus.subscribe("test.event", handler)
        assert eventBus.handlers("test.event") == [handler]

        eventBus.unsubscribe("test.event", handler)
        assert eventBus.handlers("test.event") == []

    def test_emit_without_handlers(self, run):
        assert run(eventBus.emit("nobody.listens", {})) == 0


class TestHandlerSetup:

    def test_setup_and_teardown(self):
        setup_mlm_event_handlers()
        assert eventBus.handlers(MLMEvents.ORDER_COMPLETED) == [handlers.handle_order_completed]
        assert eventBus.handlers(MLMEvents.DISTRIBUTOR_ENROLLED) == [handlers.handle_distributor_enrolled]

        teardown_mlm_event_handlers()
        assert eventBus.handlers(MLMEvents.ORDER_COMPLETED) == []


class TestEnrollment:

    def test_enrollment_places_and_announces(self, registered, handler_sessions, make_user, session, run):
        sponsorId, recruitId = make_user().userID, make_user().userID
        placed = []
        eventBus.subscribe(MLMEvents.MATRIX_PLACED, placed.append)

        run(eventBus.emit(MLMEvents.DISTRIBUTOR_ENROLLED, {"userId": recruitId, "sponsorId": sponsorId}))

        position = session.query(MatrixPosition).filter_by(userID=recruitId).one()
        assert position.parentID == sponsorId
        assert placed == [{
            "userId": recruitId,
            "sponsorId": sponsorId,
            "parentId": sponsorId,
            "level": 2,
            "legPosition": 1,
        }]

    def test_second_enrollment_is_ignored(self, registered, handler_sessions, make_user, session, run):
        sponsorId, recruitId = make_user().userID, make_user().userID
        event = {"userId": recruitId, "sponsorId": sponsorId}

        run(eventBus.emit(MLMEvents.DISTRIBUTOR_ENROLLED, event))
        run(eventBus.emit(MLMEvents.DISTRIBUTOR_ENROLLED, event))

        assert session.query(MatrixPosition).count() == 2

    def test_incomplete_event(self, handler_sessions, session, run):
        run(handlers.handle_distributor_enrolled({"userId": 5}))
        assert session.query(MatrixPosition).count() == 0


class TestOrderCompleted:

    def test_order_creates_commissions(self, registered, handler_sessions, build_chain,
                                       make_order, session, run):
        sponsor, seller = build_chain(2)
        sellerId = seller.userID
        orderId = make_order(sellerId, values=(100,)).orderID

        run(eventBus.emit(MLMEvents.ORDER_COMPLETED, {"orderId": orderId}))

        rows = session.query(Commission).filter_by(orderID=orderId).all()
        retail = [r for r in rows if r.type == "retail"]
        assert [(r.userID, r.amount) for r in retail] == [(sellerId, Decimal("25.00"))]
        assert {r.type for r in rows} == {"retail", "matrix", "matching"}

    def test_missing_order_id(self, handler_sessions, session, run):
        run(handlers.handle_order_completed({}))
        assert session.query(Commission).count() == 0
