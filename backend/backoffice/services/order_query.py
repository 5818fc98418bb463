# Overview: Typed order query filters; each filter kind is its own dataclass applied explicitly.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import or_

from ..errors import ValidationError
from ..extensions import db
from ..models import Order
from ..order_status import ALL_STATUSES
from ..time_utils import parse_iso_datetime


@dataclass(frozen=True)
class StatusFilter:
    statuses: tuple[str, ...]

    def __post_init__(self):
        unknown = [s for s in self.statuses if s not in ALL_STATUSES]
        if unknown:
            raise ValidationError("Unknown order status", {"field": "status", "values": unknown})

    def apply(self, query):
        return query.filter(Order.status.in_(self.statuses))


@dataclass(frozen=True)
class SearchFilter:
    """Order id (exact, with or without a leading #) or customer name (substring)."""
    term: str

    def apply(self, query):
        term = self.term.strip()
        conditions = [Order.customer_name.ilike(f"%{term}%")]
        digits = term.lstrip("#")
        if digits.isdigit():
            conditions.append(Order.id == int(digits))
        return query.filter(or_(*conditions))


@dataclass(frozen=True)
class DateRangeFilter:
    """created_at in [start, end], both inclusive and optional."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def __post_init__(self):
        if self.start is not None and self.end is not None and self.start > self.end:
            raise ValidationError("start must not be after end", {"field": "date_range"})

    def apply(self, query):
        if self.start is not None:
            query = query.filter(Order.created_at >= self.start)
        if self.end is not None:
            query = query.filter(Order.created_at <= self.end)
        return query


@dataclass(frozen=True)
class CustomerFilter:
    customer_id: int

    def apply(self, query):
        return query.filter(Order.customer_id == self.customer_id)


OrderFilter = Union[StatusFilter, SearchFilter, DateRangeFilter, CustomerFilter]


@dataclass(frozen=True)
class OrderQuery:
    filters: tuple[OrderFilter, ...] = field(default_factory=tuple)
    limit: int = 50
    offset: int = 0

    def where(self, *filters: OrderFilter) -> "OrderQuery":
        return OrderQuery(filters=self.filters + tuple(filters), limit=self.limit, offset=self.offset)

    def page(self, limit: int, offset: int = 0) -> "OrderQuery":
        return OrderQuery(filters=self.filters, limit=max(1, min(limit, 500)), offset=max(0, offset))

    def build(self):
        query = db.session.query(Order)
        for f in self.filters:
            query = f.apply(query)
        return query

    def run(self) -> tuple[list[Order], int]:
        query = self.build()
        total = query.count()
        rows = query.order_by(Order.created_at.desc(), Order.id.desc()).offset(self.offset).limit(self.limit).all()
        return rows, total


def from_request_args(args, *, customer_id: int | None = None) -> OrderQuery:
    """Build an OrderQuery from ?status=a,b&search=...&start=...&end=...&limit=&offset=."""
    query = OrderQuery()

    raw_status = args.get("status")
    if raw_status:
        query = query.where(StatusFilter(tuple(s.strip() for s in raw_status.split(",") if s.strip())))

    search = args.get("search")
    if search and search.strip():
        query = query.where(SearchFilter(search))

    try:
        start = parse_iso_datetime(args.get("start"))
        end = parse_iso_datetime(args.get("end"))
    except ValueError:
        raise ValidationError("start and end must be ISO-8601 datetimes", {"fields": ["start", "end"]})
    if start is not None or end is not None:
        query = query.where(DateRangeFilter(start=start, end=end))

    if customer_id is not None:
        query = query.where(CustomerFilter(customer_id))

    try:
        limit = int(args.get("limit", 50))
        offset = int(args.get("offset", 0))
    except (TypeError, ValueError):
        raise ValidationError("limit and offset must be integers", {"fields": ["limit", "offset"]})
    return query.page(limit, offset)
