from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import relationship

from ss_cashier_svc.models.base import Base, utcnow


class Customer(Base):
    """
    Billable customer record. ``stripe_id`` is the Stripe customer id and
    ``trial_ends_at`` holds a generic, subscription-less trial.
    """
    __tablename__ = 'customers'

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), nullable=True)
    stripe_id = Column(String(255), unique=True, nullable=True, index=True)
    card_brand = Column(String(50), nullable=True)
    card_last_four = Column(String(4), nullable=True)
    trial_ends_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    subscriptions = relationship(
        'Subscription',
        back_populates='customer',
        order_by='Subscription.id.desc()',
    )

    def __repr__(self) -> str:
        return f"<Customer(id={self.id}, stripe_id={self.stripe_id})>"
