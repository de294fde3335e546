import time
import logging
from typing import Any, Callable, Dict, List, Optional

import stripe

from ss_cashier_svc.config import Settings
from ss_cashier_svc.errors import RemoteRequestError
from ss_cashier_svc.resources import RemoteCard, RemoteCustomer, RemoteSubscription, field


def with_discounts(params: Dict[str, Any]) -> Dict[str, Any]:
    """Replace an abstract ``coupon`` key with Stripe's ``discounts`` list."""
    params = dict(params)
    coupon = params.pop('coupon', None)
    if coupon:
        params['discounts'] = [{'coupon': coupon}]
    return params


class StripeIntegration:
    """
    This class encapsulates the calls made to the Stripe API on behalf of the
    billing code: customers, subscriptions, invoices, charges and events.

    Every call carries the API key this instance was built with. Connection and
    authentication failures are retried; invalid requests are translated into
    :class:`RemoteRequestError`; anything else propagates.
    """

    def __init__(self, api_key: str, max_retries: int = 3, retry_delay: float = 1.0) -> None:
        if not api_key:
            raise EnvironmentError('Stripe API key (STRIPE_API_KEY) not set in environment variables.')
        self.api_key = api_key
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._tax_rates: Dict[float, str] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> 'StripeIntegration':
        return cls(
            settings.require_stripe_api_key(),
            max_retries=settings.max_retries,
            retry_delay=settings.retry_delay,
        )

    def _call(self, action: str, method: Callable[..., Any], *args: Any, **params: Any) -> Any:
        """
        Invoke a stripe-python resource method with the retry mechanism.

        :param action: Short description used in log lines and the final error.
        :param method: The stripe-python callable, e.g. ``stripe.Subscription.create``.
        :return: The Stripe object returned by the call.
        :raises RemoteRequestError: if Stripe rejects the request as invalid.
        :raises Exception: if the call keeps failing after retries.
        """
        attempt = 0
        while attempt < self.max_retries:
            try:
                return method(*args, api_key=self.api_key, **params)
            except (stripe.AuthenticationError, stripe.APIConnectionError) as e:
                logging.error(f"Error during {action} (attempt {attempt + 1}): {e}", exc_info=True)
                attempt += 1
                time.sleep(self.retry_delay)
            except stripe.InvalidRequestError as e:
                logging.error(f"Stripe rejected {action}: {e}")
                raise RemoteRequestError(str(e), code=e.code, http_status=e.http_status) from e
            except Exception as e:
                logging.error(f"General error during {action}: {e}", exc_info=True)
                raise
        raise Exception(f'Failed to {action} after retries.')

    # Customers

    def create_customer(self, options: Dict[str, Any]) -> RemoteCustomer:
        customer = self._call('customer creation', stripe.Customer.create, **with_discounts(options))
        return RemoteCustomer.from_stripe(customer)

    def retrieve_customer(self, customer_id: str) -> RemoteCustomer:
        customer = self._call('customer retrieval', stripe.Customer.retrieve, customer_id, expand=['sources'])
        return RemoteCustomer.from_stripe(customer)

    def update_customer(self, customer_id: str, fields: Dict[str, Any]) -> RemoteCustomer:
        customer = self._call('customer update', stripe.Customer.modify, customer_id, **with_discounts(fields))
        return RemoteCustomer.from_stripe(customer)

    def create_customer_source(self, customer_id: str, token: str) -> RemoteCard:
        card = self._call('card creation', stripe.Customer.create_source, customer_id, source=token)
        return RemoteCard.from_stripe(card)

    def retrieve_token(self, token: str) -> RemoteCard:
        """Return the card behind a payment token."""
        stripe_token = self._call('token retrieval', stripe.Token.retrieve, token)
        return RemoteCard.from_stripe(field(stripe_token, 'card'))

    # Subscriptions

    def create_subscription(self, customer_id: str, payload: Dict[str, Any]) -> RemoteSubscription:
        """
        Create a subscription for a customer.

        :param customer_id: The ID of the customer in Stripe.
        :param payload: ``plan``, ``quantity``, ``coupon``, ``tax_percent`` and any
            other subscription parameters (``trial_end``, ``metadata``...).
        :return: The created subscription.
        """
        params = with_discounts(payload)
        item = {'price': params.pop('plan')}
        if 'quantity' in params:
            item['quantity'] = params.pop('quantity')
        tax_percent = params.pop('tax_percent', None)
        if tax_percent:
            params['default_tax_rates'] = [self.tax_rate_for(tax_percent)]
        subscription = self._call(
            'subscription creation', stripe.Subscription.create,
            customer=customer_id, items=[item], **params
        )
        return RemoteSubscription.from_stripe(subscription)

    def tax_rate_for(self, percentage: float) -> str:
        """Id of an exclusive tax rate for ``percentage``, created once per gateway."""
        if percentage not in self._tax_rates:
            tax_rate = self._call(
                'tax rate creation', stripe.TaxRate.create,
                display_name='Tax', percentage=percentage, inclusive=False
            )
            self._tax_rates[percentage] = field(tax_rate, 'id')
        return self._tax_rates[percentage]

    def retrieve_subscription(self, subscription_id: str) -> RemoteSubscription:
        if not subscription_id or not subscription_id.strip():
            raise ValueError('subscription_id cannot be empty')
        subscription = self._call('subscription retrieval', stripe.Subscription.retrieve, subscription_id)
        return RemoteSubscription.from_stripe(subscription)

    def update_subscription(self, subscription_id: str, update_data: Dict[str, Any]) -> RemoteSubscription:
        subscription = self._call('subscription update', stripe.Subscription.modify, subscription_id, **update_data)
        return RemoteSubscription.from_stripe(subscription)

    def cancel_subscription(self, subscription_id: str) -> RemoteSubscription:
        """Cancel a subscription immediately rather than at period end."""
        subscription = self._call('subscription cancellation', stripe.Subscription.cancel, subscription_id)
        return RemoteSubscription.from_stripe(subscription)

    # Invoices

    def create_and_pay_invoice(self, customer_id: str) -> Any:
        invoice = self._call('invoice creation', stripe.Invoice.create,
                             customer=customer_id, pending_invoice_items_behavior='include')
        return self._call('invoice payment', stripe.Invoice.pay, field(invoice, 'id'))

    def list_invoices(self, customer_id: str, params: Optional[Dict[str, Any]] = None) -> List[Any]:
        invoices = self._call('invoice listing', stripe.Invoice.list, customer=customer_id, **(params or {}))
        return list(field(invoices, 'data', []))

    def upcoming_invoice(self, customer_id: str) -> Any:
        return self._call('upcoming invoice preview', stripe.Invoice.create_preview, customer=customer_id)

    def retrieve_invoice(self, invoice_id: str) -> Any:
        return self._call('invoice retrieval', stripe.Invoice.retrieve, invoice_id)

    def create_invoice_item(self, options: Dict[str, Any]) -> Any:
        return self._call('invoice item creation', stripe.InvoiceItem.create, **options)

    # Charges

    def create_charge(self, options: Dict[str, Any]) -> Any:
        return self._call('charge creation', stripe.Charge.create, **options)

    def create_refund(self, charge_id: str, options: Optional[Dict[str, Any]] = None) -> Any:
        return self._call('refund creation', stripe.Refund.create, charge=charge_id, **(options or {}))

    # Events

    def retrieve_event(self, event_id: str) -> Any:
        return self._call('event retrieval', stripe.Event.retrieve, event_id)

    def construct_event(self, payload: str, sig_header: str, endpoint_secret: str) -> Dict[str, Any]:
        """
        Validate the signature of a webhook delivery and build the event.

        :param payload: The raw payload from the webhook.
        :param sig_header: The Stripe-Signature header from the webhook.
        :param endpoint_secret: The webhook endpoint secret used for signature verification.
        :return: The reconstructed event from Stripe.
        :raises Exception: if signature verification or event processing fails.
        """
        try:
            return stripe.Webhook.construct_event(payload, sig_header, endpoint_secret)
        except stripe.SignatureVerificationError as e:
            logging.error(f'Webhook signature verification failed: {e}', exc_info=True)
            raise ValueError('Invalid signature.') from e
        except Exception as e:
            logging.error(f'General error processing webhook event: {e}', exc_info=True)
            raise
