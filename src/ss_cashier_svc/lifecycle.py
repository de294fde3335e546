import logging
import datetime
from typing import Any, Dict, Optional, Union

from ss_cashier_svc.errors import InvalidStateError, RemoteRequestError
from ss_cashier_svc.models.base import to_timestamp, utcnow
from ss_cashier_svc.models.subscription import Subscription, save_subscription
from ss_cashier_svc.resources import RemoteSubscription


class SubscriptionLifecycle:
    """
    Quantity changes, plan swaps, cancellation and resumption of one subscription.

    Each operation changes the Stripe subscription first and only then touches
    the local row. When Stripe fails the row is left as it was; when the local
    commit fails the Stripe change stays in place and
    :class:`~ss_cashier_svc.errors.SubscriptionNotSavedError` is raised.

    :param billable: The :class:`~ss_cashier_svc.billable.Billable` owning the subscription.
    :param subscription: The local subscription row.
    """

    def __init__(self, billable: Any, subscription: Subscription) -> None:
        self.billable = billable
        self.subscription = subscription
        self.prorate = True
        self.billing_cycle_anchor: Optional[Union[str, int]] = None

    @property
    def db(self):
        return self.billable.db

    @property
    def gateway(self):
        return self.billable.gateway

    def as_stripe_subscription(self) -> RemoteSubscription:
        return self.gateway.retrieve_subscription(self.subscription.stripe_id)

    def no_prorate(self) -> 'SubscriptionLifecycle':
        self.prorate = False
        return self

    def anchor_billing_cycle_on(self, date: Union[str, datetime.datetime] = 'now') -> 'SubscriptionLifecycle':
        if isinstance(date, datetime.datetime):
            date = to_timestamp(date)
        self.billing_cycle_anchor = date
        return self

    def _proration_behavior(self) -> str:
        return 'create_prorations' if self.prorate else 'none'

    def _trial_end_for_payload(self, now: datetime.datetime) -> Union[str, int]:
        # Keep the current trial running, otherwise end any plan-level trial right away.
        if self.subscription.on_trial(now):
            return to_timestamp(self.subscription.trial_ends_at)
        return 'now'

    def update_quantity(self, quantity: int) -> 'SubscriptionLifecycle':
        if quantity < 1:
            raise ValueError('Subscription quantity must be at least 1.')
        remote = self.as_stripe_subscription()
        self.gateway.update_subscription(remote.id, {
            'items': [{'id': remote.item_id, 'quantity': quantity}],
            'proration_behavior': self._proration_behavior(),
        })

        self.subscription.quantity = quantity
        save_subscription(self.db, self.subscription)
        logging.info(f"Subscription {remote.id} quantity set to {quantity}.")
        return self

    def increment_quantity(self, count: int = 1) -> 'SubscriptionLifecycle':
        return self.update_quantity(self.subscription.quantity + count)

    def increment_and_invoice(self, count: int = 1) -> 'SubscriptionLifecycle':
        self.increment_quantity(count)
        self.billable.invoice()
        return self

    def decrement_quantity(self, count: int = 1) -> 'SubscriptionLifecycle':
        return self.update_quantity(max(1, self.subscription.quantity - count))

    def swap(self, plan: str) -> 'SubscriptionLifecycle':
        """
        Move the subscription to another plan.

        The current trial and quantity carry over, a pending cancellation is
        withdrawn, and the customer is invoiced straight away for any prorations.

        :param plan: The Stripe price id to move to.
        """
        now = utcnow()
        remote = self.as_stripe_subscription()

        item: Dict[str, Any] = {'id': remote.item_id, 'price': plan}
        if self.subscription.quantity:
            item['quantity'] = self.subscription.quantity
        update_data: Dict[str, Any] = {
            'items': [item],
            'proration_behavior': self._proration_behavior(),
            'trial_end': self._trial_end_for_payload(now),
            'cancel_at_period_end': False,
        }
        if self.billing_cycle_anchor is not None:
            update_data['billing_cycle_anchor'] = self.billing_cycle_anchor

        updated = self.gateway.update_subscription(remote.id, update_data)
        self.billable.invoice()

        self.subscription.stripe_plan = plan
        self.subscription.ends_at = None
        self.subscription.cancel_at_period_end = updated.cancel_at_period_end
        self.subscription.status = updated.status
        if updated.current_period_end is not None:
            self.subscription.current_period_end = updated.current_period_end
        save_subscription(self.db, self.subscription)
        logging.info(f"Subscription {remote.id} swapped to plan {plan}.")
        return self

    def cancel(self) -> 'SubscriptionLifecycle':
        """
        Cancel at the end of the current billing period (or trial).

        :raises RemoteRequestError: if neither Stripe nor the local row knows
            when the current period ends.
        """
        now = utcnow()
        on_trial = self.subscription.on_trial(now)
        remote = self.as_stripe_subscription()
        updated = self.gateway.update_subscription(remote.id, {'cancel_at_period_end': True})

        period_end = updated.current_period_end or self.subscription.current_period_end
        # A trialing customer keeps access until the trial would have ended.
        if on_trial:
            self.subscription.ends_at = self.subscription.trial_ends_at
        elif period_end is None:
            raise RemoteRequestError(f"Subscription {remote.id} has no current period end.")
        else:
            self.subscription.ends_at = period_end
        self.subscription.cancel_at_period_end = updated.cancel_at_period_end
        self.subscription.current_period_end = period_end
        self.subscription.status = updated.status
        save_subscription(self.db, self.subscription)
        logging.info(f"Subscription {remote.id} cancelled, ends at {self.subscription.ends_at}.")
        return self

    def cancel_now(self) -> 'SubscriptionLifecycle':
        updated = self.gateway.cancel_subscription(self.subscription.stripe_id)
        self.subscription.status = updated.status
        self.mark_as_cancelled()
        logging.info(f"Subscription {updated.id} cancelled immediately.")
        return self

    def mark_as_cancelled(self) -> None:
        self.subscription.mark_as_cancelled(self.db)

    def resume(self) -> 'SubscriptionLifecycle':
        """
        Withdraw a pending cancellation.

        :raises InvalidStateError: if the subscription is not within its grace period.
        """
        now = utcnow()
        if not self.subscription.on_grace_period(now):
            raise InvalidStateError('Unable to resume subscription that is not within grace period.')

        remote = self.as_stripe_subscription()
        updated = self.gateway.update_subscription(remote.id, {
            'cancel_at_period_end': False,
            'items': [{'id': remote.item_id, 'price': self.subscription.stripe_plan}],
            'trial_end': self._trial_end_for_payload(now),
        })

        self.subscription.ends_at = None
        self.subscription.current_period_end = updated.current_period_end or self.subscription.current_period_end
        self.subscription.cancel_at_period_end = updated.cancel_at_period_end
        self.subscription.status = updated.status
        save_subscription(self.db, self.subscription)
        logging.info(f"Subscription {remote.id} resumed.")
        return self
