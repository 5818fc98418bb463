from .accounting import Account, Journal, JournalLine, AccountingPeriod
from .inventory import Product, StockMutation
from .users import User, ChatSession
from .orders import Order, OrderItem, OrderAllocation, Backorder, OrderIssue
from .invoices import Invoice, InvoiceItem, CreditNote
from .expenses import Expense
from .returns import SalesReturn
from .settings import Setting

__all__ = [
    'Account', 'Journal', 'JournalLine', 'AccountingPeriod',
    'Product', 'StockMutation',
    'User', 'ChatSession',
    'Order', 'OrderItem', 'OrderAllocation', 'Backorder', 'OrderIssue',
    'Invoice', 'InvoiceItem', 'CreditNote',
    'Expense',
    'SalesReturn',
    'Setting',
]
