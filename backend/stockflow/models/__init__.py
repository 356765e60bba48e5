from .catalog import Product
from .auth import Role, User, SessionToken
from .requests import StockRequest
from .ledger import Lot, Allocation, LedgerEvent

__all__ = [
    'Product',
    'Role', 'User', 'SessionToken',
    'StockRequest',
    'Lot', 'Allocation', 'LedgerEvent',
]
