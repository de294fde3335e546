from ss_cashier_svc.models.base import Base
from ss_cashier_svc.models.customer import Customer
from ss_cashier_svc.models.subscription import Subscription

__all__ = ['Base', 'Customer', 'Subscription']
