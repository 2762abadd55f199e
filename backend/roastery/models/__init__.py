from .auth import User, ROLE_ADMIN, ROLE_MANAGER, ROLE_TEAM, ROLE_CUSTOMER, ALL_ROLES
from .security import SecurityEvent
from .orders import Order, OrderItem
from .payments import Payment, ProcessorEvent
from .settings import SiteSetting

__all__ = [
    'User', 'ROLE_ADMIN', 'ROLE_MANAGER', 'ROLE_TEAM', 'ROLE_CUSTOMER', 'ALL_ROLES',
    'SecurityEvent',
    'Order', 'OrderItem',
    'Payment', 'ProcessorEvent',
    'SiteSetting',
]
