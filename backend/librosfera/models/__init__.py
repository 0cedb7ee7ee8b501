from .catalog import Book, BookStock, Discount
from .stock import StockReservation, StockMovement
from .cart import Cart, CartItem
from .payments import Card, CardMovement
from .sales import Sale, SaleItem, SaleEvent
from .returns import Return, ReturnItem, ReturnEvent
from .activity import ActivityLog, IdempotencyRecord

__all__ = [
    'Book', 'BookStock', 'Discount',
    'StockReservation', 'StockMovement',
    'Cart', 'CartItem',
    'Card', 'CardMovement',
    'Sale', 'SaleItem', 'SaleEvent',
    'Return', 'ReturnItem', 'ReturnEvent',
    'ActivityLog', 'IdempotencyRecord',
]
