import logging
import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from sqlalchemy.orm import Session

from ss_cashier_svc.builder import SubscriptionBuilder
from ss_cashier_svc.currency import Currency
from ss_cashier_svc.errors import (
    ConfigurationError,
    InvoiceNotFoundError,
    RemoteRequestError,
    SubscriptionNotFoundError,
)
from ss_cashier_svc.invoice import Invoice
from ss_cashier_svc.lifecycle import SubscriptionLifecycle
from ss_cashier_svc.models.base import utcnow
from ss_cashier_svc.models.subscription import Subscription
from ss_cashier_svc.resources import RemoteCard, RemoteCustomer, field


class Billable:
    """
    Billing operations for a customer record.

    The customer can be any persisted object exposing ``id``, ``email``,
    ``stripe_id``, ``card_brand``, ``card_last_four`` and ``trial_ends_at``;
    :class:`~ss_cashier_svc.models.customer.Customer` is the default one.

    :param customer: The customer record.
    :param db: SQLAlchemy Session the customer and its subscriptions live in.
    :param gateway: A :class:`~ss_cashier_svc.stripe_integration.StripeIntegration`.
    :param currency: Billing currency, USD when omitted.
    :param tax_percentage: Callable returning the tax percentage for new subscriptions.
    """

    def __init__(self, customer: Any, db: Session, gateway: Any,
                 currency: Optional[Currency] = None,
                 tax_percentage: Optional[Callable[[Any], float]] = None) -> None:
        self.customer = customer
        self.db = db
        self.gateway = gateway
        self.currency = currency or Currency()
        self._tax_percentage = tax_percentage

    # Subscriptions

    def new_subscription(self, name: str, plan: str) -> SubscriptionBuilder:
        return SubscriptionBuilder(self, name, plan)

    def subscriptions(self) -> List[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.customer_id == self.customer.id)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .all()
        )

    def subscription(self, name: str = 'default') -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.customer_id == self.customer.id, Subscription.name == name)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .first()
        )

    def lifecycle(self, name: str = 'default') -> SubscriptionLifecycle:
        subscription = self.subscription(name)
        if subscription is None:
            raise SubscriptionNotFoundError(f"Customer {self.customer.id} has no '{name}' subscription.")
        return SubscriptionLifecycle(self, subscription)

    def on_trial(self, name: Optional[str] = None, plan: Optional[str] = None) -> bool:
        """
        Determine if the customer is on trial.

        Called without arguments a generic trial counts too; otherwise only the
        named subscription (optionally on ``plan``) is considered.
        """
        if name is None and plan is None and self.on_generic_trial():
            return True
        subscription = self.subscription(name or 'default')
        if subscription is None or not subscription.on_trial():
            return False
        return plan is None or subscription.stripe_plan == plan

    def on_generic_trial(self, now: Optional[datetime.datetime] = None) -> bool:
        trial_ends_at = self.customer.trial_ends_at
        return trial_ends_at is not None and (now or utcnow()) < trial_ends_at

    def subscribed(self, name: str = 'default', plan: Optional[str] = None) -> bool:
        subscription = self.subscription(name)
        if subscription is None or not subscription.valid():
            return False
        return plan is None or subscription.stripe_plan == plan

    def subscribed_to_plan(self, plans: Union[str, Iterable[str]], name: str = 'default') -> bool:
        subscription = self.subscription(name)
        if subscription is None or not subscription.valid():
            return False
        if isinstance(plans, str):
            plans = [plans]
        return subscription.stripe_plan in plans

    def on_plan(self, plan: str) -> bool:
        subscription = (
            self.db.query(Subscription)
            .filter(Subscription.customer_id == self.customer.id, Subscription.stripe_plan == plan)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .first()
        )
        return subscription is not None and subscription.valid()

    # Customer

    def has_stripe_id(self) -> bool:
        return self.customer.stripe_id is not None

    def _require_stripe_id(self) -> str:
        if not self.has_stripe_id():
            raise ConfigurationError('Customer is not a Stripe customer. See create_as_stripe_customer.')
        return self.customer.stripe_id

    def _save_customer(self) -> None:
        self.db.add(self.customer)
        try:
            self.db.commit()
        except Exception as commit_error:
            self.db.rollback()
            logging.error(commit_error, exc_info=True)
            raise

    def create_as_stripe_customer(self, token: Optional[str] = None,
                                  options: Optional[Dict[str, Any]] = None) -> RemoteCustomer:
        options = dict(options or {})
        if 'email' not in options and self.customer.email:
            options['email'] = self.customer.email

        remote = self.gateway.create_customer(options)
        self.customer.stripe_id = remote.id
        self._save_customer()
        logging.info(f"Customer {self.customer.id} registered on Stripe as {remote.id}.")

        if token is not None:
            self.update_card(token)
        return remote

    def as_stripe_customer(self) -> RemoteCustomer:
        return self.gateway.retrieve_customer(self._require_stripe_id())

    def update_card(self, token: str) -> None:
        customer = self.as_stripe_customer()
        token_card = self.gateway.retrieve_token(token)
        # Nothing to do when the token's card already is the default source.
        if token_card.id == customer.default_source:
            return
        card = self.gateway.create_customer_source(customer.id, token)
        self.gateway.update_customer(customer.id, {'default_source': card.id})
        self._fill_card_details(card)
        self._save_customer()

    def update_card_from_stripe(self) -> 'Billable':
        """Copy the default card's brand and last four digits from Stripe."""
        card = self.as_stripe_customer().default_card()
        if card is not None:
            self._fill_card_details(card)
        else:
            self.customer.card_brand = None
            self.customer.card_last_four = None
        self._save_customer()
        return self

    def _fill_card_details(self, card: RemoteCard) -> None:
        self.customer.card_brand = card.brand
        self.customer.card_last_four = card.last4

    def has_card_on_file(self) -> bool:
        return bool(self.customer.card_brand)

    def apply_coupon(self, coupon: str) -> None:
        self.gateway.update_customer(self._require_stripe_id(), {'coupon': coupon})

    def preferred_currency(self) -> str:
        return self.currency.currency

    def tax_percentage(self) -> float:
        if self._tax_percentage is None:
            return 0
        return self._tax_percentage(self.customer)

    # Charges and invoices

    def charge(self, amount: int, options: Optional[Dict[str, Any]] = None) -> Any:
        """
        Make a one-off charge for ``amount`` minor units.

        :raises ConfigurationError: when there is neither a ``source`` option
            nor a Stripe customer to charge.
        """
        options = dict({'currency': self.preferred_currency()}, **(options or {}))
        options['amount'] = amount
        if 'source' not in options and self.has_stripe_id():
            options['customer'] = self.customer.stripe_id
        if 'source' not in options and 'customer' not in options:
            raise ConfigurationError('No payment source provided.')
        return self.gateway.create_charge(options)

    def refund(self, charge_id: str, options: Optional[Dict[str, Any]] = None) -> Any:
        return self.gateway.create_refund(charge_id, options)

    def invoice_for(self, description: str, amount: int, options: Optional[Dict[str, Any]] = None) -> Any:
        customer_id = self._require_stripe_id()
        item = {
            'customer': customer_id,
            'amount': amount,
            'currency': self.preferred_currency(),
            'description': description,
        }
        item.update(options or {})
        self.gateway.create_invoice_item(item)
        return self.invoice()

    def invoice(self) -> Any:
        """
        Invoice the customer outside the regular billing cycle.

        :return: The paid invoice, ``False`` when Stripe rejects the request
            (e.g. nothing to invoice), ``True`` when the customer is not on Stripe.
        """
        if not self.has_stripe_id():
            return True
        try:
            return self.gateway.create_and_pay_invoice(self.customer.stripe_id)
        except RemoteRequestError as e:
            logging.info(f"Invoice for customer {self.customer.stripe_id} not created: {e}")
            return False

    def upcoming_invoice(self) -> Optional[Invoice]:
        if not self.has_stripe_id():
            return None
        try:
            return Invoice(self.gateway.upcoming_invoice(self.customer.stripe_id), self.currency)
        except RemoteRequestError:
            return None

    def find_invoice(self, invoice_id: str) -> Optional[Invoice]:
        try:
            return Invoice(self.gateway.retrieve_invoice(invoice_id), self.currency)
        except RemoteRequestError as e:
            if e.not_found:
                return None
            raise

    def find_invoice_or_fail(self, invoice_id: str) -> Invoice:
        invoice = self.find_invoice(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} does not exist.")
        return invoice

    def invoices(self, include_pending: bool = False, parameters: Optional[Dict[str, Any]] = None) -> List[Invoice]:
        if not self.has_stripe_id():
            return []
        params = dict({'limit': 24}, **(parameters or {}))
        invoices = []
        for invoice in self.gateway.list_invoices(self.customer.stripe_id, params):
            if include_pending or field(invoice, 'paid') or field(invoice, 'status') == 'paid':
                invoices.append(Invoice(invoice, self.currency))
        return invoices

    def invoices_including_pending(self, parameters: Optional[Dict[str, Any]] = None) -> List[Invoice]:
        return self.invoices(True, parameters)
