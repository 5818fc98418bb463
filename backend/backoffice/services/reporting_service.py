# Overview: Service-layer operations for financial reporting; statements, aging, VAT and backorder analytics.

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Optional

from sqlalchemy import case, extract, func

from ..errors import ValidationError
from ..extensions import db
from ..models import Account, Invoice, Journal, JournalLine, Order, Product
from ..money import ZERO, from_db, money
from ..order_status import ALLOCATABLE_STATUSES, HOLD, WAITING_INVOICE
from ..time_utils import parse_iso_date, to_utc_z, utcnow
from . import account_service as accounts
from .allocation_service import _coverage
from .ledger_service import AccountFilter, DateFilter, get_account_balance
"""
Report semantics:
- Every figure is derived from journal lines through get_account_balance or an equivalent
  grouped query; nothing is cached.
- Date ranges are inclusive on journal.date. Balance sheet and aging are "as of" a date
  (inclusive); cash-flow opening balances use everything strictly before the start.
- Natural signs: assets / expenses are debit - credit, liabilities / equity / revenue are
  credit - debit.
"""

AGING_BUCKETS = ("0-30", "31-60", "61-90", ">90")


@dataclass(frozen=True)
class DateRange:
    start: Optional[date] = None
    end: Optional[date] = None
    as_of: Optional[date] = None

    def __post_init__(self):
        if self.start is not None and self.end is not None and self.start > self.end:
            raise ValidationError("start must not be after end", {"fields": ["start", "end"]})

    @property
    def effective_as_of(self) -> date:
        return self.as_of or self.end or utcnow().date()

    @classmethod
    def from_args(cls, args) -> "DateRange":
        try:
            return cls(
                start=parse_iso_date(args.get("start")),
                end=parse_iso_date(args.get("end")),
                as_of=parse_iso_date(args.get("as_of")),
            )
        except ValueError:
            raise ValidationError("start, end and as_of must be ISO-8601 dates", {"fields": ["start", "end", "as_of"]})

    def to_dict(self) -> dict:
        return {
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
        }


def _in_range(date_range: DateRange) -> DateFilter:
    return DateFilter(start=date_range.start, end=date_range.end)


def _balances_by_account(account_filter: AccountFilter, date_filter: DateFilter) -> list[dict]:
    query = (
        db.session.query(
            Account.code,
            Account.name,
            Account.type,
            func.coalesce(func.sum(JournalLine.debit - JournalLine.credit), 0).label("balance"),
        )
        .join(JournalLine, JournalLine.account_id == Account.id)
        .join(Journal, Journal.id == JournalLine.journal_id)
    )
    query = date_filter.apply(account_filter.apply(query))
    rows = query.group_by(Account.code, Account.name, Account.type).order_by(Account.code).all()
    result = []
    for code, name, acc_type, balance in rows:
        value = from_db(balance)
        if acc_type in ("liability", "equity", "revenue"):
            value = -value
        if value != 0:
            result.append({"code": code, "name": name, "type": acc_type, "balance": value})
    return result


def profit_and_loss(date_range: DateRange) -> dict:
    df = _in_range(date_range)
    revenue = get_account_balance(AccountFilter(type="revenue"), df, invert=True)
    cogs = get_account_balance(AccountFilter(code=accounts.COGS), df)
    total_expense = get_account_balance(AccountFilter(type="expense"), df)
    gross_profit = revenue - cogs
    operating_expense = total_expense - cogs
    return {
        "kind": "pnl",
        "period": date_range.to_dict(),
        "revenue": revenue,
        "cogs": cogs,
        "gross_profit": gross_profit,
        "operating_expense": operating_expense,
        "net_profit": gross_profit - operating_expense,
        "lines": _balances_by_account(AccountFilter(types=("revenue", "expense")), df),
    }


def balance_sheet(date_range: DateRange) -> dict:
    """
    assets - (liabilities + equity + current_earnings) must be zero.

    There are no closing entries, so current earnings are all revenue minus all
    expenses up to the as-of date.
    """
    as_of = date_range.effective_as_of
    df = DateFilter(end=as_of)
    assets = get_account_balance(AccountFilter(type="asset"), df)
    liabilities = get_account_balance(AccountFilter(type="liability"), df, invert=True)
    equity = get_account_balance(AccountFilter(type="equity"), df, invert=True)
    revenue = get_account_balance(AccountFilter(type="revenue"), df, invert=True)
    expense = get_account_balance(AccountFilter(type="expense"), df)
    current_earnings = revenue - expense
    balance_check = assets - (liabilities + equity + current_earnings)
    return {
        "kind": "balance_sheet",
        "as_of": as_of.isoformat(),
        "assets": assets,
        "liabilities": liabilities,
        "equity": equity,
        "current_earnings": current_earnings,
        "balance_check": balance_check,
        "is_balanced": balance_check == 0,
        "lines": _balances_by_account(AccountFilter(types=("asset", "liability", "equity")), df),
    }


def cash_flow(date_range: DateRange) -> dict:
    """opening (before start) + inflow - outflow = closing, on Kas and Bank."""
    cash = AccountFilter(codes=accounts.CASH_ACCOUNTS)
    opening = (
        get_account_balance(cash, DateFilter(before=date_range.start))
        if date_range.start is not None
        else ZERO
    )

    query = (
        db.session.query(
            func.coalesce(func.sum(JournalLine.debit), 0),
            func.coalesce(func.sum(JournalLine.credit), 0),
        )
        .join(Journal, Journal.id == JournalLine.journal_id)
        .join(Account, Account.id == JournalLine.account_id)
    )
    inflow_raw, outflow_raw = _in_range(date_range).apply(cash.apply(query)).one()
    inflow = from_db(inflow_raw)
    outflow = from_db(outflow_raw)
    closing = opening + inflow - outflow
    return {
        "kind": "cash_flow",
        "period": date_range.to_dict(),
        "accounts": list(accounts.CASH_ACCOUNTS),
        "opening_balance": opening,
        "cash_in": inflow,
        "cash_out": outflow,
        "net_change": inflow - outflow,
        "closing_balance": closing,
    }


def _bucket(days: int) -> str:
    if days <= 30:
        return "0-30"
    if days <= 60:
        return "31-60"
    if days <= 90:
        return "61-90"
    return ">90"


def _aging(kind: str, codes: tuple[str, ...], credit_normal: bool, date_range: DateRange) -> dict:
    as_of = date_range.effective_as_of
    amount = (JournalLine.credit - JournalLine.debit) if credit_normal else (JournalLine.debit - JournalLine.credit)
    rows = (
        db.session.query(
            Journal.reference_type,
            Journal.reference_id,
            func.min(Journal.date).label("first_date"),
            func.coalesce(func.sum(amount), 0).label("outstanding"),
        )
        .join(JournalLine, JournalLine.journal_id == Journal.id)
        .join(Account, Account.id == JournalLine.account_id)
        .filter(Account.code.in_(codes), Journal.date <= as_of)
        .group_by(Journal.reference_type, Journal.reference_id)
        .all()
    )

    buckets = {name: ZERO for name in AGING_BUCKETS}
    items = []
    for reference_type, reference_id, first_date, outstanding in rows:
        value = from_db(outstanding)
        if value <= 0:
            continue
        if isinstance(first_date, str):
            first_date = date.fromisoformat(first_date[:10])
        days = (as_of - first_date).days
        bucket = _bucket(days)
        buckets[bucket] += value
        items.append({
            "reference_type": reference_type,
            "reference_id": reference_id,
            "first_date": first_date.isoformat(),
            "days_outstanding": days,
            "bucket": bucket,
            "outstanding": value,
        })
    items.sort(key=lambda r: (-r["days_outstanding"], r["reference_type"] or "", r["reference_id"] or ""))
    return {
        "kind": kind,
        "as_of": as_of.isoformat(),
        "accounts": list(codes),
        "buckets": buckets,
        "total_outstanding": sum(buckets.values(), ZERO),
        "items": items,
    }


def ap_aging(date_range: DateRange) -> dict:
    return _aging("ap_aging", (accounts.AP_SUPPLIER,), True, date_range)


def ar_aging(date_range: DateRange) -> dict:
    return _aging("ar_aging", accounts.AR_ACCOUNTS, False, date_range)


def _vat_totals(date_filter: DateFilter) -> tuple[Decimal, Decimal]:
    output = get_account_balance(AccountFilter(code=accounts.VAT_OUTPUT), date_filter, invert=True)
    vat_in = get_account_balance(AccountFilter(code=accounts.VAT_INPUT), date_filter)
    return output, vat_in


def vat_monthly(date_range: DateRange) -> dict:
    """Per month: output VAT (2201, credit - debit) minus input VAT (2202, debit - credit)."""
    year_col = extract("year", Journal.date)
    month_col = extract("month", Journal.date)
    output_expr = case(
        (Account.code == accounts.VAT_OUTPUT, JournalLine.credit - JournalLine.debit),
        else_=0,
    )
    input_expr = case(
        (Account.code == accounts.VAT_INPUT, JournalLine.debit - JournalLine.credit),
        else_=0,
    )
    query = (
        db.session.query(
            year_col.label("year"),
            month_col.label("month"),
            func.coalesce(func.sum(output_expr), 0).label("output_vat"),
            func.coalesce(func.sum(input_expr), 0).label("input_vat"),
        )
        .join(JournalLine, JournalLine.journal_id == Journal.id)
        .join(Account, Account.id == JournalLine.account_id)
        .filter(Account.code.in_((accounts.VAT_OUTPUT, accounts.VAT_INPUT)))
    )
    query = _in_range(date_range).apply(query)
    rows = query.group_by(year_col, month_col).order_by(year_col, month_col).all()

    months = []
    for year, month, output_vat, input_vat in rows:
        out_v = from_db(output_vat)
        in_v = from_db(input_vat)
        months.append({
            "period": f"{int(year):04d}-{int(month):02d}",
            "output_vat": out_v,
            "input_vat": in_v,
            "net_vat": out_v - in_v,
        })
    return {
        "kind": "vat_monthly",
        "period": date_range.to_dict(),
        "months": months,
        "total_net_vat": sum((m["net_vat"] for m in months), ZERO),
    }


def tax_summary(date_range: DateRange) -> dict:
    """Issued invoices grouped by frozen tax mode, next to the ledger's VAT position."""
    query = db.session.query(
        Invoice.tax_mode_snapshot,
        func.count(Invoice.id),
        func.coalesce(func.sum(Invoice.subtotal - Invoice.discount_amount + Invoice.shipping_fee), 0),
        func.coalesce(func.sum(Invoice.tax_amount), 0),
        func.coalesce(func.sum(Invoice.pph_final_amount), 0),
        func.coalesce(func.sum(Invoice.total), 0),
    ).filter(Invoice.payment_status != "draft", Invoice.issued_at.isnot(None))
    if date_range.start is not None:
        query = query.filter(Invoice.issued_at >= datetime.combine(date_range.start, time.min))
    if date_range.end is not None:
        query = query.filter(Invoice.issued_at <= datetime.combine(date_range.end, time.max))
    rows = query.group_by(Invoice.tax_mode_snapshot).order_by(Invoice.tax_mode_snapshot).all()

    modes = []
    for mode, count, dpp, vat, pph, total in rows:
        modes.append({
            "tax_mode": mode,
            "invoice_count": int(count or 0),
            "dpp": from_db(dpp),
            "vat": from_db(vat),
            "pph_final": from_db(pph),
            "total": from_db(total),
        })
    output_vat, input_vat = _vat_totals(_in_range(date_range))
    return {
        "kind": "tax_summary",
        "period": date_range.to_dict(),
        "by_mode": modes,
        "ledger_output_vat": output_vat,
        "ledger_input_vat": input_vat,
        "ledger_net_vat": output_vat - input_vat,
    }


def backorder_report(date_range: DateRange) -> dict:
    """Open orders with outstanding quantity, split into preorders and true backorders."""
    query = db.session.query(Order).filter(Order.status.in_(ALLOCATABLE_STATUSES | {HOLD, WAITING_INVOICE}))
    if date_range.start is not None:
        query = query.filter(Order.created_at >= datetime.combine(date_range.start, time.min))
    if date_range.end is not None:
        query = query.filter(Order.created_at <= datetime.combine(date_range.end, time.max))

    orders = []
    totals = {"preorder": 0, "backorder": 0}
    shortage_qty = 0
    shortage_value = ZERO
    for order in query.order_by(Order.created_at.asc(), Order.id.asc()).all():
        rows = _coverage(order)
        short = sum(row.shortage for row in rows)
        if short <= 0:
            continue
        allocated = sum(row.allocated for row in rows)
        label = "backorder" if allocated > 0 else "preorder"
        value = money(sum((money(row.item.price_at_purchase) * row.shortage for row in rows), ZERO))
        totals[label] += 1
        shortage_qty += short
        shortage_value += value
        orders.append({
            "order_id": order.id,
            "status": order.status,
            "customer_name": order.customer_name,
            "created_at": to_utc_z(order.created_at),
            "label": label,
            "allocated_qty": allocated,
            "shortage_qty": short,
            "shortage_value": value,
        })
    return {
        "kind": "backorder_report",
        "period": date_range.to_dict(),
        "orders": orders,
        "preorder_count": totals["preorder"],
        "backorder_count": totals["backorder"],
        "total_shortage_qty": shortage_qty,
        "total_shortage_value": shortage_value,
    }


def inventory_value(date_range: DateRange) -> dict:
    """Physical stock at cost next to the ledger's Persediaan balance."""
    products = (
        db.session.query(Product)
        .filter(Product.deleted_at.is_(None))
        .order_by(Product.sku.asc())
        .all()
    )
    rows = []
    total = ZERO
    for product in products:
        on_hand = product.stock_quantity + product.allocated_quantity
        value = money(money(product.base_price) * on_hand)
        total += value
        rows.append({"product_id": product.id, "sku": product.sku, "on_hand": on_hand, "value": value})
    ledger = get_account_balance(AccountFilter(code=accounts.INVENTORY), DateFilter(end=date_range.effective_as_of))
    return {
        "kind": "inventory_value",
        "products": rows,
        "stock_value": total,
        "ledger_balance": ledger,
        "difference": total - ledger,
    }


REPORTS = {
    "pnl": profit_and_loss,
    "balance_sheet": balance_sheet,
    "cash_flow": cash_flow,
    "ap_aging": ap_aging,
    "ar_aging": ar_aging,
    "tax_summary": tax_summary,
    "vat_monthly": vat_monthly,
    "backorder_report": backorder_report,
    "inventory_value": inventory_value,
}


def get_financial_report(kind: str, date_range: DateRange | None = None) -> dict:
    builder = REPORTS.get(kind)
    if builder is None:
        raise ValidationError(f"Unknown report kind: {kind}", {"field": "kind", "allowed": sorted(REPORTS)})
    return builder(date_range or DateRange())


def serialize_report(value):
    """Decimals become strings so the payload is JSON-safe without losing precision."""
    if isinstance(value, Decimal):
        return str(money(value))
    if isinstance(value, dict):
        return {k: serialize_report(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_report(v) for v in value]
    return value
