import logging
import datetime
from typing import Any, Dict, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ss_cashier_svc.models.base import to_timestamp, utcnow
from ss_cashier_svc.models.subscription import Subscription, save_subscription
from ss_cashier_svc.resources import RemoteCustomer, RemoteSubscription


class SubscriptionBuilder:
    """
    Collects the options for a new subscription, creates it on Stripe and
    stores the local row.

    Usually obtained from ``Billable.new_subscription(name, plan)``.
    """

    def __init__(self, billable: Any, name: str, plan: str) -> None:
        self.billable = billable
        self.name = name
        self.plan = plan
        self._quantity = 1
        self._trial_days: Optional[int] = None
        self._skip_trial = False
        self._coupon: Optional[str] = None
        self._metadata: Optional[Dict[str, Any]] = None

    def quantity(self, quantity: int) -> 'SubscriptionBuilder':
        if quantity < 1:
            raise ValueError('Subscription quantity must be at least 1.')
        self._quantity = quantity
        return self

    def trial_days(self, trial_days: int) -> 'SubscriptionBuilder':
        self._trial_days = trial_days
        return self

    def skip_trial(self) -> 'SubscriptionBuilder':
        self._skip_trial = True
        return self

    def with_coupon(self, coupon: str) -> 'SubscriptionBuilder':
        self._coupon = coupon
        return self

    def with_metadata(self, metadata: Dict[str, Any]) -> 'SubscriptionBuilder':
        self._metadata = metadata
        return self

    def add(self, options: Optional[Dict[str, Any]] = None) -> Subscription:
        """Create the subscription for a customer that already has a payment source."""
        return self.create(None, options)

    def create(self, token: Optional[str] = None, options: Optional[Dict[str, Any]] = None) -> Subscription:
        """
        Create the Stripe subscription and the matching local row.

        :param token: Optional payment token attached to the customer first.
        :param options: Extra options for the Stripe customer when one is created.
        :return: The saved subscription.
        :raises SubscriptionNotSavedError: if the row cannot be saved; the
            Stripe subscription has been created at that point.
        """
        now = utcnow()
        customer = self._get_stripe_customer(token, options or {})
        remote = self.billable.gateway.create_subscription(customer.id, self.build_payload(now))

        subscription = Subscription(
            customer_id=self.billable.customer.id,
            name=self.name,
            stripe_id=remote.id,
            stripe_plan=self.plan,
            status=remote.status,
            quantity=self._quantity,
            cancel_at_period_end=False,
            current_period_end=remote.current_period_end,
            trial_ends_at=self._trial_ends_at(now),
            ends_at=None,
        )
        save_subscription(self.billable.db, subscription)
        logging.info(f"Subscription {remote.id} created for customer {customer.id} on plan {self.plan}.")
        return subscription

    def _trial_ends_at(self, now: datetime.datetime) -> Optional[datetime.datetime]:
        if self._skip_trial or not self._trial_days:
            return None
        return now + datetime.timedelta(days=self._trial_days)

    def _get_stripe_customer(self, token: Optional[str], options: Dict[str, Any]) -> RemoteCustomer:
        if not self.billable.has_stripe_id():
            if self._coupon:
                options = dict(options, coupon=self._coupon)
            return self.billable.create_as_stripe_customer(token, options)

        customer = self.billable.as_stripe_customer()
        if token:
            self.billable.update_card(token)
        return customer

    def build_payload(self, now: Optional[datetime.datetime] = None) -> Dict[str, Any]:
        payload = {
            'plan': self.plan,
            'quantity': self._quantity,
            'coupon': self._coupon,
            'trial_end': self._trial_end_for_payload(now or utcnow()),
            'tax_percent': self.billable.tax_percentage() or None,
            'metadata': self._metadata,
        }
        return {key: value for key, value in payload.items() if value}

    def _trial_end_for_payload(self, now: datetime.datetime) -> Optional[Union[str, int]]:
        if self._skip_trial:
            return 'now'
        if self._trial_days:
            return to_timestamp(now + datetime.timedelta(days=self._trial_days))
        # Leave it to the plan's own trial configuration.
        return None


def find_subscription_by_stripe_id(db: Session, stripe_id: str) -> Optional[Subscription]:
    return db.query(Subscription).filter(Subscription.stripe_id == stripe_id).first()


def update_subscription_model(subscription: Subscription, remote: RemoteSubscription,
                              metadata_attributes: Optional[Dict[str, str]] = None) -> Subscription:
    """
    Copy the mirrored Stripe fields onto a local row.

    ``client_reference_id`` is never touched here: it belongs to whoever
    created the row first.

    :param metadata_attributes: Maps logical field names to Stripe metadata
        keys; ``metadata_id`` is the only one read.
    """
    subscription.stripe_plan = remote.plan or subscription.stripe_plan or ''
    subscription.quantity = remote.quantity
    subscription.status = remote.status
    subscription.trial_ends_at = remote.trial_end
    subscription.current_period_end = remote.current_period_end
    subscription.cancel_at_period_end = remote.cancel_at_period_end
    if remote.ended_at is not None:
        subscription.ends_at = remote.ended_at
    elif remote.cancel_at_period_end:
        subscription.ends_at = remote.current_period_end
    else:
        subscription.ends_at = None

    metadata_key = (metadata_attributes or {}).get('metadata_id')
    if metadata_key and remote.metadata.get(metadata_key) is not None:
        subscription.metadata_id = str(remote.metadata[metadata_key])
    return subscription


def reconcile_subscription(db: Session, gateway: Any, customer: Any, stripe_subscription_id: str,
                           client_reference_id: Optional[str] = None, name: str = 'default',
                           metadata_attributes: Optional[Dict[str, str]] = None) -> Subscription:
    """
    Upsert the local row for an existing Stripe subscription.

    Running this twice for the same Stripe id leaves one row, and the
    ``client_reference_id`` captured by the first run survives. When another
    request inserts the same Stripe id between the lookup and the insert, the
    unique constraint rejects our insert and the other row is updated instead.

    :param db: SQLAlchemy Session instance.
    :param gateway: The Stripe gateway used to fetch the subscription.
    :param customer: The owning customer record.
    :param stripe_subscription_id: The Stripe subscription id, usually from a checkout session.
    :param client_reference_id: Correlation id stored only when the row is created.
    :return: The saved subscription.
    """
    remote = gateway.retrieve_subscription(stripe_subscription_id)

    subscription = find_subscription_by_stripe_id(db, remote.id)
    if subscription is None:
        subscription = Subscription(
            customer_id=customer.id,
            name=name,
            stripe_id=remote.id,
            client_reference_id=client_reference_id,
        )
        update_subscription_model(subscription, remote, metadata_attributes)
        try:
            with db.begin_nested():
                db.add(subscription)
        except IntegrityError:
            logging.info(f"Subscription {remote.id} was reconciled concurrently; updating the existing row.")
            subscription = find_subscription_by_stripe_id(db, remote.id)
            if subscription is None:
                raise
            update_subscription_model(subscription, remote, metadata_attributes)
    else:
        update_subscription_model(subscription, remote, metadata_attributes)

    save_subscription(db, subscription)
    logging.info(f"Subscription {remote.id} reconciled for customer {customer.id}.")
    return subscription
