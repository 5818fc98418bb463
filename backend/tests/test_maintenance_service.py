# Overview: Pytest coverage for the order reaper, bot reactivation and the sweep scheduler.

from datetime import timedelta

from backoffice.extensions import db
from backoffice.models import ChatSession, Order
from backoffice.services import allocation_service, maintenance_service
from backoffice.services.scheduler_service import SweepScheduler
from backoffice.time_utils import utcnow


class TestOrderReaper:
    def test_stale_pending_orders_expire(self, make_product, make_order):
        product = make_product(qty=0)
        order = make_order([(product, 2)])

        result = maintenance_service.expire_stale_orders(utcnow() + timedelta(days=31))

        assert [row["order_id"] for row in result["expired"]] == [order.id]
        assert result["failed"] == []
        expired = db.session.get(Order, order.id)
        assert expired.status == "expired"
        assert expired.expired_at is not None

    def test_recent_orders_are_left_alone(self, make_product, make_order):
        order = make_order([(make_product(), 1)])

        result = maintenance_service.expire_stale_orders(utcnow() + timedelta(days=29))

        assert result["expired"] == []
        assert db.session.get(Order, order.id).status == "pending"

    def test_allocated_orders_are_not_reaped(self, staff, make_product, make_order):
        order = make_order([(make_product(qty=3), 1)])
        allocation_service.allocate_order(order.id, actor=staff.warehouse)

        result = maintenance_service.expire_stale_orders(utcnow() + timedelta(days=60))

        assert result["expired"] == []
        assert db.session.get(Order, order.id).status == "allocated"

    def test_rerun_is_a_no_op(self, make_product, make_order):
        make_order([(make_product(), 1)])
        later = utcnow() + timedelta(days=31)
        maintenance_service.expire_stale_orders(later)

        assert maintenance_service.expire_stale_orders(later)["expired"] == []


class TestBotReactivation:
    def test_idle_sessions_get_the_bot_back(self, db_session, customer):
        now = utcnow()
        idle = ChatSession(customer_id=customer.id, is_bot_active=False, last_message_at=now - timedelta(hours=3))
        busy = ChatSession(customer_id=customer.id, is_bot_active=False, last_message_at=now - timedelta(minutes=5))
        db.session.add_all([idle, busy])
        db.session.commit()

        assert maintenance_service.reactivate_idle_bot_sessions(now) == 1

        db.session.expire_all()
        assert db.session.get(ChatSession, idle.id).is_bot_active is True
        assert db.session.get(ChatSession, busy.id).is_bot_active is False


class TestScheduler:
    def test_tick_runs_every_sweep(self, app, make_product, make_order):
        make_order([(make_product(), 1)])
        scheduler = SweepScheduler(app, clock=lambda: utcnow() + timedelta(days=31))

        result = scheduler.tick()

        assert result["expired_orders"] == 1
        assert result["bots_reactivated"] == 0
        assert scheduler.last_result is result
        assert scheduler.running is False
