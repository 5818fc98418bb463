# Overview: Flask API routes for financial reports.

from flask import Blueprint, jsonify, current_app, request

from ..auth import REPORT_ROLES
from ..decorators import require_actor, require_role
from ..errors import BackofficeError
from ..services import reporting_service
from ..services.reporting_service import DateRange
from . import error_response, internal_error

reports_bp = Blueprint("reports", __name__, url_prefix="/api/reports")


@reports_bp.get("/<kind>")
@require_actor
@require_role(*REPORT_ROLES)
def financial_report_route(kind: str):
    """
    ?start=YYYY-MM-DD&end=YYYY-MM-DD&as_of=YYYY-MM-DD
    kind: pnl, balance_sheet, cash_flow, ap_aging, ar_aging, tax_summary,
          vat_monthly, backorder_report, inventory_value
    """
    try:
        report = reporting_service.get_financial_report(kind, DateRange.from_args(request.args))
        return jsonify(reporting_service.serialize_report(report)), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to build %s report", kind)
        return internal_error("Failed to build report")
