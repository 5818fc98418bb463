# Overview: Pytest coverage for the typed order query filters and request-arg parsing.

from datetime import datetime, timedelta

import pytest

from backoffice.errors import ValidationError
from backoffice.extensions import db
from backoffice.models import Order
from backoffice.services import allocation_service
from backoffice.services.order_query import (
    CustomerFilter,
    DateRangeFilter,
    OrderQuery,
    SearchFilter,
    StatusFilter,
    from_request_args,
)
from backoffice.time_utils import utcnow


@pytest.fixture
def orders(staff, make_customer, make_product, make_order):
    siti = make_customer(name="Siti Rahayu")
    andi = make_customer(name="Andi Wijaya")
    product = make_product(qty=10)
    first = make_order([(product, 1)], customer_id=siti.id)
    second = make_order([(product, 2)], customer_id=andi.id)
    third = make_order([(product, 3)], customer_id=siti.id)
    allocation_service.allocate_order(second.id, actor=staff.warehouse)

    db.session.query(Order).filter_by(id=first.id).update({Order.created_at: datetime(2026, 1, 5, 8, 0)})
    db.session.commit()
    return {"siti": siti, "andi": andi, "first": first.id, "second": second.id, "third": third.id}


def _ids(query):
    rows, _ = query.run()
    return [order.id for order in rows]


class TestFilters:
    def test_status(self, orders):
        assert _ids(OrderQuery().where(StatusFilter(("allocated",)))) == [orders["second"]]

    def test_unknown_status(self):
        with pytest.raises(ValidationError):
            StatusFilter(("lost",))

    def test_search_by_name_or_id(self, orders):
        assert set(_ids(OrderQuery().where(SearchFilter("siti")))) == {orders["first"], orders["third"]}
        assert _ids(OrderQuery().where(SearchFilter(f"#{orders['second']}"))) == [orders["second"]]

    def test_date_range(self, orders):
        query = OrderQuery().where(DateRangeFilter(start=datetime(2026, 1, 1), end=datetime(2026, 1, 31)))
        assert _ids(query) == [orders["first"]]

    def test_inverted_date_range(self):
        with pytest.raises(ValidationError):
            DateRangeFilter(start=datetime(2026, 2, 1), end=datetime(2026, 1, 1))

    def test_filters_combine(self, orders):
        query = OrderQuery().where(CustomerFilter(orders["siti"].id), StatusFilter(("pending",)))
        assert set(_ids(query)) == {orders["first"], orders["third"]}

    def test_newest_first_with_paging(self, orders):
        rows, total = OrderQuery().page(2).run()
        assert total == 3
        assert [o.id for o in rows] == [orders["third"], orders["second"]]


class TestFromRequestArgs:
    def test_parses_every_filter(self, orders):
        now = utcnow()
        args = {
            "status": "pending, allocated",
            "search": "Wijaya",
            "start": (now - timedelta(days=1)).isoformat() + "Z",
            "limit": "10",
        }
        assert _ids(from_request_args(args)) == [orders["second"]]

    def test_customer_scope_is_forced(self, orders):
        query = from_request_args({}, customer_id=orders["andi"].id)
        assert _ids(query) == [orders["second"]]

    @pytest.mark.parametrize("args", [{"limit": "many"}, {"start": "yesterday"}])
    def test_bad_args(self, db_session, args):
        with pytest.raises(ValidationError):
            from_request_args(args)
