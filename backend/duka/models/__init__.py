from .catalog import Product, Customer, Supplier
from .sales import Sale, SaleItem
from .purchases import Purchase, PurchaseItem
from .inventory import StockMovement
from .documents import DocumentSequence
from .payments import MpesaTransaction

__all__ = [
    'Product', 'Customer', 'Supplier',
    'Sale', 'SaleItem',
    'Purchase', 'PurchaseItem',
    'StockMovement',
    'DocumentSequence',
    'MpesaTransaction',
]
