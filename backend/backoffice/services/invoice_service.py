# Overview: Service-layer operations for invoices and payments; issuance, verification, COD settlement and postings.

from __future__ import annotations

from ..auth import (
    CUSTOMER,
    FINANCE_ROLES,
    INVOICE_ROLES,
    WAREHOUSE_ROLES,
    require_role,
)
from ..errors import Forbidden, InvalidTransition, PreconditionFailed, ResourceNotFound, ValidationError
from ..extensions import db
from ..models import CreditNote, Invoice, InvoiceItem, Journal
from ..money import ZERO, money, to_decimal
from ..order_status import (
    ALLOCATED,
    COMPLETED,
    DELIVERED,
    PARTIALLY_FULFILLED,
    PROCESSING,
    READY_TO_SHIP,
    TERMINAL_STATUSES,
    WAITING_INVOICE,
    WAITING_PAYMENT,
)
from ..signals import notify_status_change
from ..time_utils import utcnow
from . import account_service as accounts
from .allocation_service import _coverage, _lock_order, _resolve_open_issues
from .concurrency import begin_write, lock_for_update, run_with_retry
from .ledger_service import _post_journal_locked, _reverse_journal_locked
from .tax_service import compute_invoice_tax, get_tax_config
"""
Invoice Rules (authoritative)

- An order has at most one live invoice. It is drafted when the order moves to
  waiting_invoice and issued from there.
- Issuance covers allocated quantities only, freezes the tax regime on the invoice and
  posts two balanced journals (sale, COGS) referencing the invoice id.
- transfer_manual invoices wait for proof-of-transfer verification; cod / cash_store
  invoices are cod_pending until the cash is settled.
- paid and cod_pending invoices cannot be deleted; deleting an unpaid invoice reverses
  its journals.
- Canceling an invoiced order voids its unpaid or cod_pending invoice in the same
  transaction; a paid order needs its payment voided first.
"""

CASH_ON_DELIVERY_METHODS = ("cod", "cash_store")


def target_status_for(payment_method: str) -> str:
    """Where an order goes when its invoice is issued."""
    return WAITING_PAYMENT if payment_method == "transfer_manual" else READY_TO_SHIP


def receivable_account_for(payment_method: str) -> str:
    return accounts.AR_CUSTOMER if payment_method == "transfer_manual" else accounts.AR_DRIVER


def _lock_invoice(invoice_id: int) -> Invoice:
    invoice = lock_for_update(db.session.query(Invoice).filter_by(id=invoice_id)).first()
    if invoice is None:
        raise ResourceNotFound("Invoice", invoice_id)
    return invoice


def _live_invoice(order_id: int) -> Invoice | None:
    return (
        db.session.query(Invoice)
        .filter(Invoice.order_id == order_id)
        .order_by(Invoice.id.desc())
        .first()
    )


def get_invoice(invoice_id: int) -> Invoice:
    invoice = db.session.get(Invoice, invoice_id)
    if invoice is None:
        raise ResourceNotFound("Invoice", invoice_id)
    return invoice


def list_invoices(*, payment_status: str | None = None, limit: int = 100) -> list[Invoice]:
    query = db.session.query(Invoice)
    if payment_status:
        query = query.filter(Invoice.payment_status == payment_status)
    return query.order_by(Invoice.id.desc()).limit(limit).all()


def request_invoice(order_id: int, *, actor) -> Invoice:
    """allocated / partially_fulfilled -> waiting_invoice, with a draft invoice."""
    require_role(actor, INVOICE_ROLES | WAREHOUSE_ROLES, "request invoices")
    previous = {}

    def _op():
        begin_write()
        order = _lock_order(order_id)
        previous["status"] = order.status
        if order.status not in (ALLOCATED, PARTIALLY_FULFILLED):
            raise InvalidTransition(order.status, WAITING_INVOICE)
        if sum(row.allocated for row in _coverage(order)) <= 0:
            raise PreconditionFailed("Nothing is allocated to invoice", {"order_id": order.id})

        invoice = _live_invoice(order.id)
        if invoice is None:
            invoice = Invoice(
                order_id=order.id,
                customer_id=order.customer_id,
                payment_method=order.payment_method,
                payment_status="draft",
                created_at=utcnow(),
            )
            db.session.add(invoice)
        order.status = WAITING_INVOICE
        _resolve_open_issues(order, actor=actor)
        db.session.commit()
        return invoice

    invoice = run_with_retry(_op)
    notify_status_change(order_id, previous.get("status"), WAITING_INVOICE, actor)
    return invoice


def issue_invoice(order_id: int, *, actor, expected_status: str | None = None) -> Invoice:
    """
    Issue the invoice for the order's allocated quantities and post it.

    Sale journal: Dr receivable (1103 transfer / 1104 COD & cash store) total,
    Cr 4100 taxable base, Cr 2201 VAT. COGS journal: Dr 5100 / Cr 1300.

    Raises:
        InvalidTransition: order is not waiting_invoice
        PreconditionFailed: expected_status does not match the payment method, or nothing is allocated
    """
    require_role(actor, INVOICE_ROLES, "issue invoices")
    previous = {}

    def _op():
        begin_write()
        order = _lock_order(order_id)
        previous["status"] = order.status
        target = target_status_for(order.payment_method)
        if order.status != WAITING_INVOICE:
            raise InvalidTransition(order.status, expected_status or target)
        if expected_status is not None and expected_status != target:
            raise PreconditionFailed(
                f"{order.payment_method} orders move to {target} when invoiced",
                {"payment_method": order.payment_method, "requested": expected_status, "expected": target},
            )

        rows = [row for row in _coverage(order) if row.allocated > 0]
        if not rows:
            raise PreconditionFailed("Nothing is allocated to invoice", {"order_id": order.id})

        invoice = _live_invoice(order.id)
        if invoice is None:
            invoice = Invoice(
                order_id=order.id,
                customer_id=order.customer_id,
                payment_method=order.payment_method,
                payment_status="draft",
                created_at=utcnow(),
            )
            db.session.add(invoice)
        elif invoice.payment_status != "draft":
            raise PreconditionFailed(
                f"Order already has an issued invoice ({invoice.invoice_number})",
                {"invoice_id": invoice.id},
            )

        subtotal = ZERO
        cogs = ZERO
        for item in list(invoice.items):
            invoice.items.remove(item)
        for row in rows:
            unit_price = money(row.item.price_at_purchase)
            unit_cost = money(row.item.cost_at_purchase or 0)
            line_total = money(unit_price * row.allocated)
            invoice.items.append(InvoiceItem(
                order_item_id=row.item.id,
                qty=row.allocated,
                unit_price=unit_price,
                unit_cost=unit_cost,
                line_total=line_total,
            ))
            subtotal += line_total
            cogs += money(unit_cost * row.allocated)

        discount = min(money(order.discount_amount or 0), subtotal)
        shipping = money(order.shipping_fee or 0)
        config = get_tax_config()
        tax = compute_invoice_tax(subtotal - discount + shipping, config)

        now = utcnow()
        invoice.payment_method = order.payment_method
        invoice.payment_status = "cod_pending" if order.payment_method in CASH_ON_DELIVERY_METHODS else "unpaid"
        invoice.subtotal = money(subtotal)
        invoice.discount_amount = discount
        invoice.shipping_fee = shipping
        invoice.tax_percent = tax.tax_percent
        invoice.tax_amount = tax.tax_amount
        invoice.pph_final_amount = tax.pph_final_amount
        invoice.total = tax.total
        invoice.tax_mode_snapshot = tax.mode
        invoice.amount_paid = ZERO
        invoice.issued_at = now
        invoice.invoice_number = f"INV-{now:%Y%m%d}-{order.id}"
        db.session.flush()

        if tax.total > 0:
            sale_lines = [
                {"account_code": receivable_account_for(order.payment_method), "debit": tax.total},
                {"account_code": accounts.SALES, "credit": tax.base},
            ]
            if tax.tax_amount > 0:
                sale_lines.append({"account_code": accounts.VAT_OUTPUT, "credit": tax.tax_amount})
            _post_journal_locked(
                lines=sale_lines,
                date=now.date(),
                reference_type="invoice",
                reference_id=invoice.id,
                description=f"Sales invoice {invoice.invoice_number}",
                actor=actor,
            )
        if cogs > 0:
            _post_journal_locked(
                lines=[
                    {"account_code": accounts.COGS, "debit": cogs},
                    {"account_code": accounts.INVENTORY, "credit": cogs},
                ],
                date=now.date(),
                reference_type="invoice_cogs",
                reference_id=invoice.id,
                description=f"COGS {invoice.invoice_number}",
                actor=actor,
            )

        order.status = target
        db.session.commit()
        return invoice

    invoice = run_with_retry(_op)
    notify_status_change(order_id, previous.get("status"), target_status_for(invoice.payment_method), actor)
    return invoice


def upload_payment_proof(invoice_id: int, proof_url: str, *, actor) -> Invoice:
    """Attach an opaque proof-of-transfer URL; the customer who owns the invoice or staff may do this."""
    if not proof_url or not str(proof_url).strip():
        raise ValidationError("payment_proof_url is required", {"field": "payment_proof_url"})

    def _op():
        invoice = _lock_invoice(invoice_id)
        if actor.role == CUSTOMER and invoice.customer_id != actor.id:
            raise Forbidden("Customers may only upload proof for their own invoices", {"invoice_id": invoice.id})
        if not actor.is_system and actor.role != CUSTOMER and not actor.is_staff:
            raise Forbidden(f"Role {actor.role} may not upload payment proof", {"role": actor.role})
        if invoice.payment_status != "unpaid":
            raise PreconditionFailed(
                f"Cannot attach proof to a {invoice.payment_status} invoice",
                {"invoice_id": invoice.id, "payment_status": invoice.payment_status},
            )
        invoice.payment_proof_url = str(proof_url).strip()
        db.session.commit()
        return invoice

    return run_with_retry(_op)


def verify_payment(invoice_id: int, action: str, *, actor) -> Invoice:
    """
    Approve or reject a transfer.

    approve: invoice paid, Dr 1102 Bank / Cr 1103 Piutang Usaha; waiting_payment orders
    become ready_to_ship and delivered orders completed. Approving twice is a no-op.
    reject: invoice stays unpaid with the proof cleared; the order keeps waiting_payment.
    """
    require_role(actor, FINANCE_ROLES, "verify payments")
    if action not in ("approve", "reject"):
        raise ValidationError("action must be approve or reject", {"field": "action"})
    changes = {}

    def _op():
        begin_write()
        invoice = _lock_invoice(invoice_id)
        if action == "approve" and invoice.payment_status == "paid":
            return invoice
        if invoice.payment_status != "unpaid":
            raise PreconditionFailed(
                f"Cannot verify a {invoice.payment_status} invoice",
                {"invoice_id": invoice.id, "payment_status": invoice.payment_status},
            )

        now = utcnow()
        if action == "reject":
            invoice.payment_proof_url = None
            invoice.verified_by = getattr(actor, "id", None)
            invoice.verified_at = now
            db.session.commit()
            return invoice

        invoice.payment_status = "paid"
        invoice.amount_paid = invoice.total
        invoice.verified_by = getattr(actor, "id", None)
        invoice.verified_at = now
        if money(invoice.total) > 0:
            receipt = _post_journal_locked(
                lines=[
                    {"account_code": accounts.BANK, "debit": invoice.total},
                    {"account_code": receivable_account_for(invoice.payment_method), "credit": invoice.total},
                ],
                date=now.date(),
                reference_type="invoice",
                reference_id=invoice.id,
                description=f"Payment {invoice.invoice_number}",
                actor=actor,
            )
            invoice.payment_journal_id = receipt.id

        if invoice.order_id is not None:
            order = _lock_order(invoice.order_id)
            before = order.status
            if order.status == WAITING_PAYMENT:
                order.status = READY_TO_SHIP
            elif order.status == DELIVERED:
                order.status = COMPLETED
            if order.status != before:
                changes["order"] = (order.id, before, order.status)
        db.session.commit()
        return invoice

    invoice = run_with_retry(_op)
    if "order" in changes:
        notify_status_change(*changes["order"], actor)
    return invoice


def settle_cod(invoice_id: int, amount, *, actor) -> Invoice:
    """
    Settle cash collected on delivery: Dr 1101 Kas / Cr 1104 Piutang Driver.
    The order must already be delivered; it becomes completed.
    """
    require_role(actor, FINANCE_ROLES, "settle COD payments")
    value = money(to_decimal(amount))
    changes = {}

    def _op():
        begin_write()
        invoice = _lock_invoice(invoice_id)
        if invoice.payment_status != "cod_pending":
            raise PreconditionFailed(
                f"Cannot settle a {invoice.payment_status} invoice",
                {"invoice_id": invoice.id, "payment_status": invoice.payment_status},
            )
        if value != money(invoice.total):
            raise ValidationError(
                "Settled amount must equal the invoice total",
                {"field": "amount", "expected": str(money(invoice.total)), "received": str(value)},
            )
        order = _lock_order(invoice.order_id) if invoice.order_id is not None else None
        if order is not None and order.status != DELIVERED:
            raise PreconditionFailed(
                "COD can only be settled after delivery",
                {"order_id": order.id, "status": order.status},
            )

        now = utcnow()
        invoice.payment_status = "paid"
        invoice.amount_paid = value
        invoice.verified_by = getattr(actor, "id", None)
        invoice.verified_at = now
        if value > 0:
            receipt = _post_journal_locked(
                lines=[
                    {"account_code": accounts.CASH, "debit": value},
                    {"account_code": receivable_account_for(invoice.payment_method), "credit": value},
                ],
                date=now.date(),
                reference_type="invoice",
                reference_id=invoice.id,
                description=f"COD settlement {invoice.invoice_number}",
                actor=actor,
            )
            invoice.payment_journal_id = receipt.id
        if order is not None:
            order.status = COMPLETED
            changes["order"] = (order.id, DELIVERED, COMPLETED)
        db.session.commit()
        return invoice

    invoice = run_with_retry(_op)
    if "order" in changes:
        notify_status_change(*changes["order"], actor)
    return invoice


def _open_invoice_journals(invoice: Invoice) -> list[Journal]:
    """Sale and COGS journals of the invoice that have not been reversed yet."""
    reversed_ids = db.select(Journal.reversal_of_id).where(Journal.reversal_of_id.is_not(None))
    return (
        db.session.query(Journal)
        .filter(
            Journal.reference_type.in_(("invoice", "invoice_cogs")),
            Journal.reference_id == str(invoice.id),
            Journal.reversal_of_id.is_(None),
            Journal.id.not_in(reversed_ids),
        )
        .order_by(Journal.id.asc())
        .all()
    )


def _void_invoice_locked(invoice: Invoice, *, actor, description: str) -> list[int]:
    """Reverse every open journal of an unpaid invoice and drop it. Caller commits."""
    if invoice.payment_status == "paid":
        raise PreconditionFailed(
            "paid invoices cannot be voided",
            {"invoice_id": invoice.id, "payment_status": invoice.payment_status},
        )
    credited = db.session.query(CreditNote.id).filter(CreditNote.invoice_id == invoice.id).first()
    if credited is not None:
        raise PreconditionFailed(
            "Invoice has credit notes and cannot be voided",
            {"invoice_id": invoice.id, "credit_note_id": credited[0]},
        )
    reversals = [
        _reverse_journal_locked(journal, actor=actor, description=description).id
        for journal in _open_invoice_journals(invoice)
    ]
    db.session.delete(invoice)
    return reversals


def _void_for_cancel_locked(order, *, actor) -> dict | None:
    """
    Take back the books of an order that is being canceled.

    Draft invoices are dropped; unpaid and cod_pending invoices have their sale and
    COGS journals reversed. A paid order must have its payment voided first.
    """
    invoice = _live_invoice(order.id)
    if invoice is None:
        return None
    if invoice.payment_status == "paid":
        raise PreconditionFailed(
            "Paid orders cannot be canceled; void the payment first",
            {"order_id": order.id, "invoice_id": invoice.id},
        )
    invoice_id = invoice.id
    reversals = _void_invoice_locked(
        invoice,
        actor=actor,
        description=f"Cancel order #{order.id}: void invoice {invoice.invoice_number or invoice_id}",
    )
    return {"invoice_id": invoice_id, "reversal_journal_ids": reversals}


def delete_invoice(invoice_id: int, *, actor) -> dict:
    """
    Remove a draft or unpaid invoice.

    paid and cod_pending invoices are protected. An unpaid invoice's journals are
    reversed and a waiting_payment order returns to waiting_invoice.
    """
    require_role(actor, INVOICE_ROLES | FINANCE_ROLES, "delete invoices")
    changes = {}

    def _op():
        begin_write()
        invoice = _lock_invoice(invoice_id)
        if invoice.payment_status in ("paid", "cod_pending"):
            raise PreconditionFailed(
                f"{invoice.payment_status} invoices cannot be deleted",
                {"invoice_id": invoice.id, "payment_status": invoice.payment_status},
            )
        order_id = invoice.order_id
        reversals = _void_invoice_locked(
            invoice, actor=actor, description=f"Void invoice {invoice.invoice_number or invoice_id}"
        )

        if order_id is not None:
            order = _lock_order(order_id)
            if order.status == WAITING_PAYMENT:
                order.status = WAITING_INVOICE
                changes["order"] = (order.id, WAITING_PAYMENT, WAITING_INVOICE)
        db.session.commit()
        return {"invoice_id": invoice_id, "reversal_journal_ids": reversals}

    result = run_with_retry(_op)
    if "order" in changes:
        notify_status_change(*changes["order"], actor)
    return result


def void_payment(invoice_id: int, *, actor) -> Invoice:
    """
    Undo a recorded payment: the receipt journal is reversed and the invoice goes
    back to unpaid (transfer) or cod_pending (COD / cash store).

    Transfer orders that were released for shipping on the strength of the payment
    (ready_to_ship, processing) go back to waiting_payment. Completed orders are
    closed and keep their payment.
    """
    require_role(actor, FINANCE_ROLES, "void payments")
    changes = {}

    def _op():
        begin_write()
        invoice = _lock_invoice(invoice_id)
        if invoice.payment_status != "paid":
            raise PreconditionFailed(
                f"Cannot void the payment of a {invoice.payment_status} invoice",
                {"invoice_id": invoice.id, "payment_status": invoice.payment_status},
            )
        order = _lock_order(invoice.order_id) if invoice.order_id is not None else None
        if order is not None and order.status in TERMINAL_STATUSES:
            raise PreconditionFailed(
                f"Payments of {order.status} orders cannot be voided",
                {"order_id": order.id, "status": order.status},
            )

        if invoice.payment_journal_id is not None:
            receipt = db.session.get(Journal, invoice.payment_journal_id)
            _reverse_journal_locked(receipt, actor=actor, description=f"Void payment {invoice.invoice_number}")

        invoice.payment_status = "cod_pending" if invoice.payment_method in CASH_ON_DELIVERY_METHODS else "unpaid"
        invoice.amount_paid = ZERO
        invoice.payment_journal_id = None
        invoice.payment_proof_url = None
        invoice.verified_by = None
        invoice.verified_at = None

        if (
            order is not None
            and invoice.payment_method == "transfer_manual"
            and order.status in (READY_TO_SHIP, PROCESSING)
        ):
            changes["order"] = (order.id, order.status, WAITING_PAYMENT)
            order.status = WAITING_PAYMENT
        db.session.commit()
        return invoice

    invoice = run_with_retry(_op)
    if "order" in changes:
        notify_status_change(*changes["order"], actor)
    return invoice
