"""
Read-only projections over Stripe invoices and their line items.

Amounts come from Stripe in minor units and are formatted with the
customer's :class:`~ss_cashier_svc.currency.Currency`.
"""
import datetime
from typing import Any, List, Optional

from ss_cashier_svc.currency import Currency
from ss_cashier_svc.models.base import from_timestamp
from ss_cashier_svc.resources import field


class InvoiceItem:

    def __init__(self, item: Any, currency: Currency) -> None:
        self.item = item
        self.currency = currency

    def total(self) -> str:
        return self.currency.format_amount(field(self.item, 'amount', 0))

    def is_subscription(self) -> bool:
        return field(self.item, 'type') == 'subscription'

    def start_date(self) -> Optional[datetime.datetime]:
        if self.is_subscription():
            return from_timestamp(field(field(self.item, 'period'), 'start'))
        return None

    def end_date(self) -> Optional[datetime.datetime]:
        if self.is_subscription():
            return from_timestamp(field(field(self.item, 'period'), 'end'))
        return None

    def get(self, key: str, default: Any = None) -> Any:
        return field(self.item, key, default)


class Invoice:

    def __init__(self, invoice: Any, currency: Currency) -> None:
        self.invoice = invoice
        self.currency = currency

    @property
    def id(self) -> Optional[str]:
        return field(self.invoice, 'id')

    def get(self, key: str, default: Any = None) -> Any:
        """Access any Stripe invoice field not modelled here."""
        return field(self.invoice, key, default)

    def date(self) -> Optional[datetime.datetime]:
        return from_timestamp(field(self.invoice, 'created') or field(self.invoice, 'date'))

    def raw_starting_balance(self) -> int:
        return field(self.invoice, 'starting_balance', 0)

    def raw_total(self) -> int:
        return max(0, field(self.invoice, 'total', 0) - (self.raw_starting_balance() * -1))

    def total(self) -> str:
        return self.currency.format_amount(self.raw_total())

    def subtotal(self) -> str:
        return self.currency.format_amount(max(0, field(self.invoice, 'subtotal', 0) - self.raw_starting_balance()))

    def has_starting_balance(self) -> bool:
        return self.raw_starting_balance() > 0

    def starting_balance(self) -> str:
        return self.currency.format_amount(self.raw_starting_balance())

    def _discount(self) -> Any:
        discount = field(self.invoice, 'discount')
        if discount is None:
            discounts = field(self.invoice, 'discounts', [])
            # Expanded discount objects only; bare ids carry no coupon.
            discount = next((d for d in discounts if not isinstance(d, str)), None)
        return discount

    def has_discount(self) -> bool:
        subtotal = field(self.invoice, 'subtotal', 0)
        return subtotal > 0 and subtotal != field(self.invoice, 'total', 0) and self._discount() is not None

    def discount(self) -> str:
        return self.currency.format_amount(field(self.invoice, 'subtotal', 0) - field(self.invoice, 'total', 0))

    def _coupon(self) -> Any:
        discount = self._discount()
        return field(discount, 'coupon') or field(field(discount, 'source'), 'coupon')

    def coupon(self) -> Optional[str]:
        return field(self._coupon(), 'id')

    def discount_is_percentage(self) -> bool:
        return self.coupon() is not None and field(self._coupon(), 'percent_off') is not None

    def percent_off(self) -> float:
        if self.coupon():
            return field(self._coupon(), 'percent_off', 0)
        return 0

    def amount_off(self) -> str:
        return self.currency.format_amount(field(self._coupon(), 'amount_off', 0))

    def invoice_items_by_type(self, item_type: str) -> List[InvoiceItem]:
        lines = field(field(self.invoice, 'lines'), 'data', [])
        return [InvoiceItem(line, self.currency) for line in lines if field(line, 'type') == item_type]

    def invoice_items(self) -> List[InvoiceItem]:
        return self.invoice_items_by_type('invoiceitem')

    def subscriptions(self) -> List[InvoiceItem]:
        return self.invoice_items_by_type('subscription')
