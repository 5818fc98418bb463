# Overview: Pytest coverage for financial statements, aging buckets, VAT and stock analytics.

import random
from datetime import date
from decimal import Decimal

import pytest

from backoffice.errors import ValidationError
from backoffice.services import allocation_service, inventory_service, ledger_service
from backoffice.services.reporting_service import DateRange, get_financial_report, serialize_report


def _post(debit, credit, amount, on, reference_type=None, reference_id=None):
    return ledger_service.post_journal(
        lines=[
            {"account_code": debit, "debit": amount},
            {"account_code": credit, "credit": amount},
        ],
        date=on,
        reference_type=reference_type,
        reference_id=reference_id,
    )


class TestStatements:
    def test_balance_sheet_ties_out_for_random_postings(self, db_session):
        rng = random.Random(20261018)
        codes = ["1101", "1102", "1103", "1104", "1300", "2100", "2201", "2202", "3100", "4100", "5100", "5300"]
        for _ in range(40):
            debit, credit = rng.sample(codes, 2)
            amount = f"{rng.randint(1, 500000)}.{rng.randint(0, 99):02d}"
            on = date(2026, rng.randint(1, 6), rng.randint(1, 28))
            _post(debit, credit, amount, on)

        for as_of in (date(2026, 2, 28), date(2026, 6, 30)):
            report = get_financial_report("balance_sheet", DateRange(as_of=as_of))
            assert report["balance_check"] == Decimal("0.00")
            assert report["is_balanced"] is True

    def test_profit_and_loss(self, db_session):
        _post("1103", "4100", "100000", date(2026, 3, 1))
        _post("5100", "1300", "60000", date(2026, 3, 1))
        _post("5300", "1101", "15000", date(2026, 3, 5))
        _post("5300", "1101", "99999", date(2026, 4, 1))

        report = get_financial_report("pnl", DateRange(start=date(2026, 3, 1), end=date(2026, 3, 31)))

        assert report["revenue"] == Decimal("100000.00")
        assert report["cogs"] == Decimal("60000.00")
        assert report["gross_profit"] == Decimal("40000.00")
        assert report["operating_expense"] == Decimal("15000.00")
        assert report["net_profit"] == Decimal("25000.00")

    def test_cash_flow_reconciles(self, db_session):
        _post("1101", "3100", "500000", date(2026, 1, 2))
        _post("1102", "1103", "120000", date(2026, 2, 10))
        _post("5300", "1101", "20000", date(2026, 2, 15))
        _post("1103", "4100", "70000", date(2026, 2, 20))

        report = get_financial_report("cash_flow", DateRange(start=date(2026, 2, 1), end=date(2026, 2, 28)))

        assert report["opening_balance"] == Decimal("500000.00")
        assert report["cash_in"] == Decimal("120000.00")
        assert report["cash_out"] == Decimal("20000.00")
        assert report["closing_balance"] == Decimal("600000.00")

    def test_unknown_kind(self, db_session):
        with pytest.raises(ValidationError):
            get_financial_report("horoscope")

    def test_inverted_range(self):
        with pytest.raises(ValidationError):
            DateRange(start=date(2026, 2, 1), end=date(2026, 1, 1))

    def test_serialized_report_uses_strings(self, db_session):
        _post("1101", "3100", "1000", date(2026, 1, 2))
        payload = serialize_report(get_financial_report("balance_sheet", DateRange(as_of=date(2026, 1, 31))))
        assert payload["assets"] == "1000.00"
        assert payload["is_balanced"] is True


class TestAging:
    def test_receivables_are_bucketed_per_reference(self, db_session):
        _post("1103", "4100", "100000", date(2026, 1, 15), "invoice", 1)
        _post("1103", "4100", "50000", date(2026, 4, 20), "invoice", 2)
        _post("1102", "1103", "20000", date(2026, 5, 1), "invoice", 2)
        _post("1104", "4100", "30000", date(2026, 5, 25), "invoice", 3)
        _post("1103", "4100", "10000", date(2026, 5, 1), "invoice", 4)
        _post("1102", "1103", "10000", date(2026, 5, 2), "invoice", 4)

        report = get_financial_report("ar_aging", DateRange(as_of=date(2026, 5, 31)))

        assert report["buckets"] == {
            "0-30": Decimal("30000.00"),
            "31-60": Decimal("30000.00"),
            "61-90": Decimal("0.00"),
            ">90": Decimal("100000.00"),
        }
        assert report["total_outstanding"] == Decimal("160000.00")
        assert [item["reference_id"] for item in report["items"]] == ["1", "2", "3"]

    def test_payables_use_credit_balance(self, db_session):
        _post("1300", "2100", "80000", date(2026, 3, 1), "purchase", "PO-1")
        _post("2100", "1102", "30000", date(2026, 3, 20), "purchase", "PO-1")

        report = get_financial_report("ap_aging", DateRange(as_of=date(2026, 4, 15)))

        assert report["buckets"]["31-60"] == Decimal("50000.00")
        assert report["items"][0]["reference_id"] == "PO-1"


class TestTaxReports:
    def test_vat_monthly_nets_input_against_output(self, db_session):
        _post("1103", "2201", "1100", date(2026, 1, 10))
        _post("1103", "2201", "550", date(2026, 2, 3))
        _post("2202", "2100", "200", date(2026, 2, 9))

        report = get_financial_report("vat_monthly", DateRange(start=date(2026, 1, 1), end=date(2026, 2, 28)))

        assert [(m["period"], m["output_vat"], m["input_vat"], m["net_vat"]) for m in report["months"]] == [
            ("2026-01", Decimal("1100.00"), Decimal("0.00"), Decimal("1100.00")),
            ("2026-02", Decimal("550.00"), Decimal("200.00"), Decimal("350.00")),
        ]
        assert report["total_net_vat"] == Decimal("1450.00")

        summary = get_financial_report("tax_summary", DateRange(start=date(2026, 1, 1), end=date(2026, 2, 28)))
        assert summary["ledger_net_vat"] == Decimal("1450.00")
        assert summary["by_mode"] == []


class TestStockReports:
    def test_backorder_report_labels(self, db_session, staff, make_product, make_order):
        scarce = make_product(qty=1, price="5000")
        empty = make_product(qty=0, price="7000")
        backorder = make_order([(scarce, 3)])
        preorder = make_order([(empty, 2)])
        allocation_service.allocate_order(backorder.id, actor=staff.warehouse)
        allocation_service.allocate_order(preorder.id, actor=staff.warehouse)

        report = get_financial_report("backorder_report")

        labels = {row["order_id"]: row["label"] for row in report["orders"]}
        assert labels == {backorder.id: "backorder", preorder.id: "preorder"}
        assert report["total_shortage_qty"] == 4
        assert report["total_shortage_value"] == Decimal("24000.00")

    def test_inventory_value_against_ledger(self, db_session, staff, make_product):
        product = make_product(qty=0, base_price="6000")
        inventory_service.receive_stock(product_id=product.id, qty=5, unit_cost="6000", actor=staff.warehouse)

        report = get_financial_report("inventory_value")

        assert report["stock_value"] == Decimal("30000.00")
        assert report["ledger_balance"] == Decimal("30000.00")
        assert report["difference"] == Decimal("0.00")
