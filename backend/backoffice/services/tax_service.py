# Overview: Company tax configuration (PKP / non-PKP) and per-invoice tax computation.

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from ..auth import FINANCE_ROLES, require_role
from ..errors import ValidationError
from ..extensions import db
from ..models import Setting
from ..money import ZERO, apply_percent, money, percent, to_decimal
from ..time_utils import utcnow

TAX_SETTING_KEY = "company_tax_config"
TAX_MODES = ("pkp", "non_pkp")

DEFAULT_TAX_CONFIG = {
    "company_tax_mode": "non_pkp",
    "vat_percent": "11",
    "pph_final_percent": "0.5",
}


@dataclass(frozen=True)
class TaxConfig:
    mode: str
    vat_percent: Decimal
    pph_final_percent: Decimal

    def to_dict(self) -> dict:
        return {
            "company_tax_mode": self.mode,
            "vat_percent": str(self.vat_percent),
            "pph_final_percent": str(self.pph_final_percent),
        }


@dataclass(frozen=True)
class TaxBreakdown:
    mode: str
    base: Decimal
    tax_percent: Decimal
    tax_amount: Decimal
    pph_final_amount: Decimal
    total: Decimal


def _from_value(value: dict) -> TaxConfig:
    merged = dict(DEFAULT_TAX_CONFIG)
    merged.update(value or {})
    return TaxConfig(
        mode=merged["company_tax_mode"],
        vat_percent=percent(str(merged["vat_percent"])),
        pph_final_percent=percent(str(merged["pph_final_percent"])),
    )


def get_tax_config() -> TaxConfig:
    setting = db.session.get(Setting, TAX_SETTING_KEY)
    return _from_value(setting.value if setting is not None else None)


def update_tax_config(*, actor, mode: str | None = None, vat_percent=None, pph_final_percent=None) -> TaxConfig:
    """
    Change the company tax regime. Issued invoices keep their own snapshot and are
    never recomputed.
    """
    require_role(actor, FINANCE_ROLES, "change tax settings")
    current = get_tax_config().to_dict()

    if mode is not None:
        if mode not in TAX_MODES:
            raise ValidationError("Invalid tax mode", {"field": "company_tax_mode", "allowed": list(TAX_MODES)})
        current["company_tax_mode"] = mode
    for field, raw in (("vat_percent", vat_percent), ("pph_final_percent", pph_final_percent)):
        if raw is None:
            continue
        value = percent(to_decimal(raw, field))
        if value < 0 or value > 100:
            raise ValidationError(f"{field} must be between 0 and 100", {"field": field})
        current[field] = str(value)

    setting = db.session.get(Setting, TAX_SETTING_KEY)
    if setting is None:
        setting = Setting(key=TAX_SETTING_KEY, value=current)
        db.session.add(setting)
    else:
        setting.value = current
    setting.updated_by = getattr(actor, "id", None)
    setting.updated_at = utcnow()
    db.session.commit()
    return _from_value(current)


def ensure_tax_defaults() -> None:
    if db.session.get(Setting, TAX_SETTING_KEY) is None:
        db.session.add(Setting(key=TAX_SETTING_KEY, value=dict(DEFAULT_TAX_CONFIG)))
        db.session.flush()


def compute_invoice_tax(base, config: TaxConfig) -> TaxBreakdown:
    """
    pkp: VAT is added on top of the base.
    non_pkp: PPh final is recorded against the base but not added to the total.
    """
    base = money(base)
    if config.mode == "pkp":
        tax = apply_percent(base, config.vat_percent)
        return TaxBreakdown("pkp", base, config.vat_percent, tax, ZERO, money(base + tax))
    pph = apply_percent(base, config.pph_final_percent)
    return TaxBreakdown("non_pkp", base, ZERO, ZERO, pph, base)
