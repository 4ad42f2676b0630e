from .auth import User, Role, UserRole, SessionToken
from .catalog import Vendor, Product, ProductVariant, VariantCombination, variant_combination_variants
from .inventory import Inventory, InventoryHistory
from .customers import Address, Cart, CartItem
from .orders import Order, OrderItem, OrderDetail
from .payments import PaymentTransaction
from .communications import Notification

__all__ = [
    'User', 'Role', 'UserRole', 'SessionToken',
    'Vendor', 'Product', 'ProductVariant', 'VariantCombination', 'variant_combination_variants',
    'Inventory', 'InventoryHistory',
    'Address', 'Cart', 'CartItem',
    'Order', 'OrderItem', 'OrderDetail',
    'PaymentTransaction',
    'Notification',
]
