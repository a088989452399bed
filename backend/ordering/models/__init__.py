from .catalog import Branch, Product, ProductAttribute, ProductAttributeItem, StockRecord
from .pricing import PriceOverride
from .carts import Cart, CartLine
from .discounts import Discount, DiscountRedemption
from .orders import Order, OrderLine, OrderEvent, PaymentEvent, DocumentSequence

__all__ = [
    'Branch', 'Product', 'ProductAttribute', 'ProductAttributeItem', 'StockRecord',
    'PriceOverride',
    'Cart', 'CartLine',
    'Discount', 'DiscountRedemption',
    'Order', 'OrderLine', 'OrderEvent', 'PaymentEvent', 'DocumentSequence',
]
