import logging
import datetime
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, relationship

from ss_cashier_svc.errors import SubscriptionNotSavedError
from ss_cashier_svc.models.base import Base, utcnow


class Subscription(Base):
    """
    Subscription model representing one named Stripe subscription of a customer.

    ``status`` mirrors Stripe's status string for display only; whether the
    subscription is usable is derived from ``trial_ends_at`` and ``ends_at``
    by the predicates below.
    """
    __tablename__ = 'subscriptions'

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey('customers.id', ondelete='CASCADE'), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    stripe_id = Column(String(255), unique=True, nullable=True, index=True)
    stripe_plan = Column(String(255), nullable=False)
    status = Column(String(255), nullable=True)
    metadata_id = Column(String(255), nullable=True)
    client_reference_id = Column(String(255), nullable=True)
    quantity = Column(Integer, default=1, nullable=False)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    current_period_end = Column(DateTime, nullable=True)
    trial_ends_at = Column(DateTime, nullable=True)
    ends_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    customer = relationship('Customer', back_populates='subscriptions')

    def valid(self, now: Optional[datetime.datetime] = None) -> bool:
        """Active, on trial, or within the grace period after cancellation."""
        now = now or utcnow()
        return self.active(now) or self.on_trial(now) or self.on_grace_period(now)

    def active(self, now: Optional[datetime.datetime] = None) -> bool:
        return self.ends_at is None or self.on_grace_period(now)

    def cancelled(self) -> bool:
        """Cancellation was requested; service may still run until ``ends_at``."""
        return self.ends_at is not None

    def on_trial(self, now: Optional[datetime.datetime] = None) -> bool:
        if self.trial_ends_at is None:
            return False
        # Trials end on a day boundary, so compare against the start of today.
        today = (now or utcnow()).replace(hour=0, minute=0, second=0, microsecond=0)
        return today < self.trial_ends_at

    def on_grace_period(self, now: Optional[datetime.datetime] = None) -> bool:
        if self.ends_at is None:
            return False
        return (now or utcnow()) < self.ends_at

    def recurring(self, now: Optional[datetime.datetime] = None) -> bool:
        return not self.on_trial(now) and not self.cancelled()

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, name={self.name}, stripe_id={self.stripe_id})>"

    def mark_as_cancelled(self, db: Session, now: Optional[datetime.datetime] = None) -> None:
        self.ends_at = now or utcnow()
        save_subscription(db, self)


def save_subscription(db: Session, subscription: Subscription) -> Subscription:
    """
    Commit a subscription row.

    :raises SubscriptionNotSavedError: on any database failure. Stripe-side
        changes made before the commit are not undone.
    """
    stripe_id = subscription.stripe_id
    db.add(subscription)
    try:
        db.commit()
    except SQLAlchemyError as commit_error:
        db.rollback()
        logging.error(commit_error, exc_info=True)
        raise SubscriptionNotSavedError(
            f"Subscription {stripe_id} was not saved."
        ) from commit_error
    return subscription
