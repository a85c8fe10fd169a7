from .catalog import Product, Customer
from .orders import CustomerOrder, CustomerOrderItem
from .ledger import Transaction

__all__ = [
    'Product', 'Customer',
    'CustomerOrder', 'CustomerOrderItem',
    'Transaction',
]
