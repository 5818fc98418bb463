# Overview: Chart of accounts: default seed, lookups and parent/child rollup.

from __future__ import annotations

from ..errors import ResourceNotFound, ValidationError
from ..extensions import db
from ..models import Account
from ..models.accounting import ACCOUNT_TYPES

# code, name, type, parent code
DEFAULT_CHART = [
    ("1000", "Aset", "asset", None),
    ("1100", "Aset Lancar", "asset", "1000"),
    ("1101", "Kas", "asset", "1100"),
    ("1102", "Bank", "asset", "1100"),
    ("1103", "Piutang Usaha", "asset", "1100"),
    ("1104", "Piutang Driver", "asset", "1100"),
    ("1105", "Piutang Karyawan", "asset", "1100"),
    ("1300", "Persediaan Barang", "asset", "1000"),
    ("2000", "Kewajiban", "liability", None),
    ("2100", "Hutang Supplier", "liability", "2000"),
    ("2201", "PPN Keluaran", "liability", "2000"),
    ("2202", "PPN Masukan", "asset", "1000"),
    ("2203", "Hutang Refund", "liability", "2000"),
    ("2300", "Pendapatan Ditangguhkan", "liability", "2000"),
    ("3000", "Ekuitas", "equity", None),
    ("3100", "Modal Pemilik", "equity", "3000"),
    ("3200", "Laba Ditahan", "equity", "3000"),
    ("4000", "Pendapatan", "revenue", None),
    ("4100", "Penjualan", "revenue", "4000"),
    ("4101", "Retur Penjualan", "revenue", "4000"),
    ("4200", "Keuntungan Penyesuaian Stok", "revenue", "4000"),
    ("5000", "Beban", "expense", None),
    ("5100", "Harga Pokok Penjualan", "expense", "5000"),
    ("5200", "Beban Gaji", "expense", "5000"),
    ("5300", "Beban Operasional", "expense", "5000"),
    ("5400", "Beban Refund", "expense", "5000"),
    ("5500", "Beban Transportasi", "expense", "5000"),
    ("5600", "Kerugian Penyesuaian Stok", "expense", "5000"),
]

# Well-known posting accounts
CASH = "1101"
BANK = "1102"
AR_CUSTOMER = "1103"
AR_DRIVER = "1104"
AR_EMPLOYEE = "1105"
INVENTORY = "1300"
AP_SUPPLIER = "2100"
VAT_OUTPUT = "2201"
VAT_INPUT = "2202"
REFUND_PAYABLE = "2203"
SALES = "4100"
SALES_RETURN = "4101"
COGS = "5100"
SALARY = "5200"
OPERATIONAL = "5300"
REFUND_EXPENSE = "5400"
TRANSPORT = "5500"

CASH_ACCOUNTS = (CASH, BANK)
AR_ACCOUNTS = (AR_CUSTOMER, AR_DRIVER, AR_EMPLOYEE)


def seed_chart_of_accounts() -> int:
    """Insert any missing default accounts. Idempotent; returns how many were created."""
    existing = {a.code: a for a in db.session.query(Account).all()}
    created = 0
    for code, name, acc_type, parent_code in DEFAULT_CHART:
        if code in existing:
            continue
        parent = existing.get(parent_code) if parent_code else None
        account = Account(code=code, name=name, type=acc_type, is_active=True, parent=parent)
        db.session.add(account)
        existing[code] = account
        created += 1
    db.session.flush()
    return created


def get_account_by_code(code: str) -> Account:
    account = db.session.query(Account).filter_by(code=str(code)).first()
    if account is None or account.deleted_at is not None:
        raise ResourceNotFound("Account", code)
    return account


def create_account(*, code: str, name: str, type: str, parent_code: str | None = None) -> Account:
    if type not in ACCOUNT_TYPES:
        raise ValidationError("Invalid account type", {"field": "type", "allowed": list(ACCOUNT_TYPES)})
    if db.session.query(Account).filter_by(code=code).first() is not None:
        raise ValidationError("Account code already exists", {"field": "code", "value": code})
    parent = get_account_by_code(parent_code) if parent_code else None
    account = Account(code=code, name=name, type=type, is_active=True, parent=parent)
    db.session.add(account)
    db.session.commit()
    return account


def descendant_ids(account_id: int) -> list[int]:
    """The account itself plus every descendant, breadth-first."""
    rows = db.session.query(Account.id, Account.parent_id).all()
    children: dict[int, list[int]] = {}
    for acc_id, parent_id in rows:
        if parent_id is not None:
            children.setdefault(parent_id, []).append(acc_id)

    result = [account_id]
    frontier = [account_id]
    while frontier:
        nxt = []
        for acc_id in frontier:
            for child in children.get(acc_id, []):
                result.append(child)
                nxt.append(child)
        frontier = nxt
    return result
