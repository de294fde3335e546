import re
import enum
import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from ss_cashier_svc.builder import find_subscription_by_stripe_id, reconcile_subscription
from ss_cashier_svc.models.base import utcnow
from ss_cashier_svc.models.customer import Customer
from ss_cashier_svc.models.subscription import Subscription
from ss_cashier_svc.resources import field


class WebhookOutcome(str, enum.Enum):
    HANDLED = 'handled'
    UNHANDLED = 'unhandled'
    NOT_GENUINE = 'not_genuine'


def handler_name(event_type: str) -> str:
    """``customer.subscription.deleted`` -> ``CustomerSubscriptionDeleted``."""
    return ''.join(part.capitalize() for part in re.split(r'[._]', event_type) if part)


class WebhookReconciler:
    """
    Applies Stripe webhook events to local subscription rows.

    Stripe delivers events at least once and in any order, so every handler
    is written to be safe when the same event arrives again.

    :param db: SQLAlchemy Session instance.
    :param gateway: The Stripe gateway, used to confirm the event exists.
    :param after_subscription_update: Called with the customer after a webhook
        changed at least one of its subscriptions.
    :param metadata_attributes: Logical field name to Stripe metadata key map
        used when reconciling new subscriptions.
    :param customer_lookup: Resolves a Stripe customer id to the local customer.
    """

    def __init__(self, db: Session, gateway: Any,
                 after_subscription_update: Optional[Callable[[Any], None]] = None,
                 metadata_attributes: Optional[Dict[str, str]] = None,
                 customer_lookup: Optional[Callable[[str], Any]] = None) -> None:
        self.db = db
        self.gateway = gateway
        self.after_subscription_update = after_subscription_update
        self.metadata_attributes = metadata_attributes or {}
        self.customer_lookup = customer_lookup or self.get_customer_by_stripe_id
        self.handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {
            'CustomerSubscriptionDeleted': self.handle_customer_subscription_deleted,
            'CheckoutSessionCompleted': self.handle_checkout_session_completed,
        }

    def register(self, event_type: str, handler: Callable[[Dict[str, Any]], None]) -> None:
        self.handlers[handler_name(event_type)] = handler

    def handle(self, event: Dict[str, Any]) -> WebhookOutcome:
        """
        Verify and dispatch one webhook payload.

        :param event: Dictionary representing the Stripe event payload.
        :return: The outcome; only ``HANDLED`` means a handler ran.
        :raises ValueError: if the payload has no ``id`` or ``type``.
        """
        event_type = event.get('type')
        if not event_type:
            error_msg = "Missing 'type' in event payload"
            logging.error(error_msg)
            raise ValueError(error_msg)
        event_id = event.get('id')
        if not event_id:
            error_msg = "Missing 'id' in event payload"
            logging.error(error_msg)
            raise ValueError(error_msg)

        if not self.event_exists_on_stripe(event_id):
            logging.warning(f"Event {event_id} ({event_type}) could not be confirmed with Stripe. No action taken.")
            return WebhookOutcome.NOT_GENUINE

        handler = self.handlers.get(handler_name(event_type))
        if handler is None:
            logging.info(f"Unhandled event type: {event_type} for event {event_id}. No action taken.")
            return WebhookOutcome.UNHANDLED

        handler(event)
        logging.info(f"Event {event_id}: {event_type} processed successfully.")
        return WebhookOutcome.HANDLED

    def event_exists_on_stripe(self, event_id: str) -> bool:
        # A forged payload carries an id Stripe does not know about.
        try:
            event = self.gateway.retrieve_event(event_id)
        except Exception as e:
            logging.warning(f"Event {event_id} retrieval failed: {e}", exc_info=True)
            return False
        return field(event, 'id') is not None

    def get_customer_by_stripe_id(self, stripe_id: Optional[str]) -> Optional[Customer]:
        if not stripe_id:
            return None
        return self.db.query(Customer).filter(Customer.stripe_id == stripe_id).first()

    def _notify(self, customer: Any) -> None:
        if self.after_subscription_update is not None:
            self.after_subscription_update(customer)

    def handle_customer_subscription_deleted(self, event: Dict[str, Any]) -> None:
        """
        Mark the customer's rows for the deleted Stripe subscription as cancelled.

        Rows that have already ended are left as they are, so a redelivered event
        neither moves ``ends_at`` nor calls ``after_subscription_update`` again.
        A row still in its grace period is ended now.
        """
        stripe_subscription = event.get('data', {}).get('object', {})
        customer = self.customer_lookup(stripe_subscription.get('customer'))
        if customer is None:
            logging.info(f"Event {event.get('id')}: no customer for {stripe_subscription.get('customer')}.")
            return

        now = utcnow()
        updated = False
        subscriptions = self.db.query(Subscription).filter(Subscription.customer_id == customer.id).all()
        for subscription in subscriptions:
            if subscription.stripe_id != stripe_subscription.get('id'):
                continue
            # Already ended: a redelivery must not push ends_at forward.
            if subscription.cancelled() and not subscription.on_grace_period(now):
                continue
            subscription.mark_as_cancelled(self.db, now)
            updated = True

        if updated:
            self._notify(customer)

    def handle_checkout_session_completed(self, event: Dict[str, Any]) -> None:
        session = event.get('data', {}).get('object', {})
        if session.get('mode') != 'subscription':
            return

        customer = self.customer_lookup(session.get('customer'))
        if customer is None:
            logging.info(f"Event {event.get('id')}: no customer for {session.get('customer')}.")
            return

        stripe_subscription_id = session.get('subscription')
        if not stripe_subscription_id:
            error_msg = "Missing subscription id in checkout.session.completed event"
            logging.error(error_msg)
            raise ValueError(error_msg)

        # A previous delivery of this event already created the row.
        if find_subscription_by_stripe_id(self.db, stripe_subscription_id) is not None:
            logging.info(f"Event {event.get('id')}: subscription {stripe_subscription_id} already reconciled.")
            return

        reconcile_subscription(
            self.db,
            self.gateway,
            customer,
            stripe_subscription_id,
            client_reference_id=session.get('client_reference_id'),
            metadata_attributes=self.metadata_attributes,
        )
        self._notify(customer)


def process_event(event: Dict[str, Any], db: Session, gateway: Any, **options: Any) -> WebhookOutcome:
    """
    Process a Stripe event and update subscription records accordingly.

    :param event: Dictionary representing the Stripe event payload.
    :param db: SQLAlchemy Session instance.
    :param gateway: The Stripe gateway.
    :param options: Passed on to :class:`WebhookReconciler`.
    """
    return WebhookReconciler(db, gateway, **options).handle(event)
