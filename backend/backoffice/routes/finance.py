# Overview: Flask API routes for finance; journals, periods, invoices, payments, expenses, credit notes and tax settings.

from flask import Blueprint, jsonify, g, current_app, request

from ..auth import FINANCE_ROLES, REPORT_ROLES
from ..decorators import require_actor, require_role
from ..errors import BackofficeError, Forbidden, ValidationError
from ..money import to_str
from ..services import credit_note_service, expense_service, invoice_service, ledger_service, tax_service, inventory_service
from ..services.ledger_service import AccountFilter, DateFilter
from ..time_utils import parse_iso_date, utcnow
from ..validation import coerce_int, json_body, require_fields
from . import error_response, internal_error

finance_bp = Blueprint("finance", __name__, url_prefix="/api/finance")


def _parse_date(raw, field: str):
    try:
        return parse_iso_date(raw)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 date", {"field": field})


@finance_bp.post("/journals")
@require_actor
@require_role(*FINANCE_ROLES)
def post_journal_route():
    try:
        data = json_body()
        require_fields(data, "lines")
        journal = ledger_service.post_journal(
            lines=data["lines"],
            date=_parse_date(data.get("date"), "date") or utcnow().date(),
            reference_type=data.get("reference_type"),
            reference_id=data.get("reference_id"),
            description=data.get("description"),
            actor=g.actor,
            is_adjustment=bool(data.get("is_adjustment", False)),
        )
        return jsonify({"journal": journal.to_dict()}), 201
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to post journal")
        return internal_error("Failed to post journal")


@finance_bp.get("/journals")
@require_actor
@require_role(*REPORT_ROLES)
def list_journals_route():
    try:
        limit = max(1, min(request.args.get("limit", default=100, type=int), 500))
        rows = ledger_service.list_journals(
            reference_type=request.args.get("reference_type"),
            reference_id=request.args.get("reference_id"),
            limit=limit,
        )
        return jsonify({"journals": [j.to_dict() for j in rows]}), 200
    except Exception:
        current_app.logger.exception("Failed to list journals")
        return internal_error("Failed to list journals")


@finance_bp.post("/journals/<int:journal_id>/reverse")
@require_actor
@require_role(*FINANCE_ROLES)
def reverse_journal_route(journal_id: int):
    try:
        data = json_body()
        reversal = ledger_service.reverse_journal(
            journal_id, actor=g.actor, on_date=_parse_date(data.get("date"), "date")
        )
        return jsonify({"journal": reversal.to_dict()}), 201
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to reverse journal")
        return internal_error("Failed to reverse journal")


@finance_bp.post("/periods/close")
@require_actor
@require_role(*FINANCE_ROLES)
def close_period_route():
    try:
        data = json_body()
        period = ledger_service.close_period(
            coerce_int(data.get("year"), "year"), coerce_int(data.get("month"), "month"), actor=g.actor
        )
        return jsonify({"period": period.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to close period")
        return internal_error("Failed to close period")


@finance_bp.get("/accounts/<code>/balance")
@require_actor
@require_role(*REPORT_ROLES)
def account_balance_route(code: str):
    try:
        date_filter = DateFilter(
            start=_parse_date(request.args.get("start"), "start"),
            end=_parse_date(request.args.get("end"), "end"),
        )
        include_children = request.args.get("include_children", "false").lower() == "true"
        invert = request.args.get("invert", "false").lower() == "true"
        balance = ledger_service.get_account_balance(
            AccountFilter(code=code, include_children=include_children), date_filter, invert
        )
        return jsonify({"code": code, "balance": to_str(balance)}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to compute account balance")
        return internal_error("Failed to compute account balance")


@finance_bp.post("/orders/<int:order_id>/invoice")
@require_actor
def issue_invoice_route(order_id: int):
    try:
        invoice = invoice_service.issue_invoice(order_id, actor=g.actor)
        return jsonify({"invoice": invoice.to_dict(include_items=True)}), 201
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to issue invoice")
        return internal_error("Failed to issue invoice")


@finance_bp.get("/invoices")
@require_actor
@require_role(*REPORT_ROLES)
def list_invoices_route():
    try:
        rows = invoice_service.list_invoices(payment_status=request.args.get("payment_status"))
        return jsonify({"invoices": [i.to_dict() for i in rows]}), 200
    except Exception:
        current_app.logger.exception("Failed to list invoices")
        return internal_error("Failed to list invoices")


@finance_bp.get("/invoices/<int:invoice_id>")
@require_actor
def get_invoice_route(invoice_id: int):
    try:
        invoice = invoice_service.get_invoice(invoice_id)
        if not g.actor.is_staff and invoice.customer_id != g.actor.id:
            raise Forbidden("Invoice belongs to another customer", {"invoice_id": invoice_id})
        return jsonify({"invoice": invoice.to_dict(include_items=True)}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load invoice")
        return internal_error("Failed to load invoice")


@finance_bp.post("/invoices/<int:invoice_id>/proof")
@require_actor
def upload_proof_route(invoice_id: int):
    try:
        data = json_body()
        invoice = invoice_service.upload_payment_proof(invoice_id, data.get("payment_proof_url"), actor=g.actor)
        return jsonify({"invoice": invoice.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to attach payment proof")
        return internal_error("Failed to attach payment proof")


@finance_bp.post("/invoices/<int:invoice_id>/verify")
@require_actor
def verify_payment_route(invoice_id: int):
    try:
        data = json_body()
        require_fields(data, "action")
        invoice = invoice_service.verify_payment(invoice_id, data["action"], actor=g.actor)
        return jsonify({"invoice": invoice.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to verify payment")
        return internal_error("Failed to verify payment")


@finance_bp.post("/invoices/<int:invoice_id>/settle-cod")
@require_actor
def settle_cod_route(invoice_id: int):
    try:
        data = json_body()
        require_fields(data, "amount")
        invoice = invoice_service.settle_cod(invoice_id, data["amount"], actor=g.actor)
        return jsonify({"invoice": invoice.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to settle COD")
        return internal_error("Failed to settle COD")


@finance_bp.delete("/invoices/<int:invoice_id>")
@require_actor
def delete_invoice_route(invoice_id: int):
    try:
        result = invoice_service.delete_invoice(invoice_id, actor=g.actor)
        return jsonify(result), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to delete invoice")
        return internal_error("Failed to delete invoice")


@finance_bp.get("/tax-settings")
@require_actor
@require_role(*REPORT_ROLES)
def get_tax_settings_route():
    return jsonify(tax_service.get_tax_config().to_dict()), 200


@finance_bp.put("/tax-settings")
@require_actor
def update_tax_settings_route():
    try:
        data = json_body()
        config = tax_service.update_tax_config(
            actor=g.actor,
            mode=data.get("company_tax_mode"),
            vat_percent=data.get("vat_percent"),
            pph_final_percent=data.get("pph_final_percent"),
        )
        return jsonify(config.to_dict()), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update tax settings")
        return internal_error("Failed to update tax settings")


@finance_bp.post("/supplier-payments")
@require_actor
def supplier_payment_route():
    try:
        data = json_body()
        require_fields(data, "amount", "reference_id")
        journal = inventory_service.record_supplier_payment(
            amount=data["amount"],
            reference_id=data["reference_id"],
            actor=g.actor,
            on_date=_parse_date(data.get("date"), "date"),
            note=data.get("note"),
        )
        return jsonify({"journal": journal.to_dict()}), 201
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record supplier payment")
        return internal_error("Failed to record supplier payment")


@finance_bp.post("/invoices/<int:invoice_id>/void-payment")
@require_actor
def void_payment_route(invoice_id: int):
    try:
        invoice = invoice_service.void_payment(invoice_id, actor=g.actor)
        return jsonify({"invoice": invoice.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to void payment")
        return internal_error("Failed to void payment")


@finance_bp.post("/expenses")
@require_actor
def create_expense_route():
    try:
        data = json_body()
        require_fields(data, "category", "amount")
        expense = expense_service.create_expense(
            category=data["category"],
            amount=data["amount"],
            actor=g.actor,
            on_date=_parse_date(data.get("date"), "date"),
            note=data.get("note"),
            expense_account_code=data.get("expense_account_code"),
        )
        return jsonify({"expense": expense.to_dict()}), 201
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create expense")
        return internal_error("Failed to create expense")


@finance_bp.get("/expenses")
@require_actor
@require_role(*REPORT_ROLES)
def list_expenses_route():
    try:
        rows = expense_service.list_expenses(
            status=request.args.get("status"),
            category=request.args.get("category"),
            start=_parse_date(request.args.get("start"), "start"),
            end=_parse_date(request.args.get("end"), "end"),
        )
        return jsonify({"expenses": [e.to_dict() for e in rows]}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list expenses")
        return internal_error("Failed to list expenses")


@finance_bp.post("/expenses/<int:expense_id>/<action>")
@require_actor
def expense_action_route(expense_id: int, action: str):
    try:
        data = json_body()
        if action == "approve":
            expense = expense_service.approve_expense(expense_id, actor=g.actor)
        elif action == "reject":
            expense = expense_service.reject_expense(expense_id, actor=g.actor, reason=data.get("reason"))
        elif action == "pay":
            expense = expense_service.pay_expense(
                expense_id, actor=g.actor, payment_account_code=str(data.get("payment_account_code", "1101"))
            )
        else:
            raise ValidationError("action must be approve, reject or pay", {"field": "action"})
        return jsonify({"expense": expense.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update expense")
        return internal_error("Failed to update expense")


@finance_bp.post("/invoices/<int:invoice_id>/credit-notes")
@require_actor
def create_credit_note_route(invoice_id: int):
    try:
        data = json_body()
        require_fields(data, "amount")
        note = credit_note_service.create_credit_note(
            invoice_id,
            amount=data["amount"],
            tax_amount=data.get("tax_amount", 0),
            reason=data.get("reason"),
            mode=data.get("mode", "receivable"),
            actor=g.actor,
        )
        return jsonify({"credit_note": note.to_dict()}), 201
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create credit note")
        return internal_error("Failed to create credit note")


@finance_bp.get("/credit-notes")
@require_actor
@require_role(*REPORT_ROLES)
def list_credit_notes_route():
    try:
        rows = credit_note_service.list_credit_notes(
            invoice_id=request.args.get("invoice_id", type=int),
            status=request.args.get("status"),
        )
        return jsonify({"credit_notes": [n.to_dict() for n in rows]}), 200
    except Exception:
        current_app.logger.exception("Failed to list credit notes")
        return internal_error("Failed to list credit notes")


@finance_bp.post("/credit-notes/<int:credit_note_id>/post")
@require_actor
def post_credit_note_route(credit_note_id: int):
    try:
        data = json_body()
        note = credit_note_service.post_credit_note(
            credit_note_id,
            actor=g.actor,
            pay_now=bool(data.get("pay_now", False)),
            payment_account_code=str(data.get("payment_account_code", "1101")),
        )
        return jsonify({"credit_note": note.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to post credit note")
        return internal_error("Failed to post credit note")


@finance_bp.post("/credit-notes/<int:credit_note_id>/refund")
@require_actor
def refund_credit_note_route(credit_note_id: int):
    try:
        data = json_body()
        note = credit_note_service.refund_credit_note(
            credit_note_id, actor=g.actor, payment_account_code=str(data.get("payment_account_code", "1101"))
        )
        return jsonify({"credit_note": note.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to refund credit note")
        return internal_error("Failed to refund credit note")
