"""
Typed views over Stripe resources.

Only the fields the billing code reads are modelled; everything else stays
reachable through ``raw``.
"""
import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ss_cashier_svc.models.base import from_timestamp


def field(resource: Any, key: str, default: Any = None) -> Any:
    """Read ``key`` from a Stripe object or plain dict, ``default`` when missing or null."""
    if resource is None:
        return default
    try:
        value = resource[key]
    except (KeyError, TypeError, IndexError):
        return default
    return default if value is None else value


def as_dict(resource: Any) -> Dict[str, Any]:
    if resource is None:
        return {}
    if isinstance(resource, dict):
        return dict(resource)
    to_dict = getattr(resource, 'to_dict', None)
    if callable(to_dict):
        return to_dict()
    return {}


class RemoteCard(BaseModel):
    id: str
    brand: Optional[str] = None
    last4: Optional[str] = None

    @classmethod
    def from_stripe(cls, card: Any) -> 'RemoteCard':
        return cls(id=field(card, 'id'), brand=field(card, 'brand'), last4=field(card, 'last4'))


class RemoteCustomer(BaseModel):
    id: str
    email: Optional[str] = None
    default_source: Optional[str] = None
    sources: List[RemoteCard] = Field(default_factory=list)
    raw: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_stripe(cls, customer: Any) -> 'RemoteCustomer':
        default_source = field(customer, 'default_source')
        # default_source is an id unless it was expanded.
        if default_source is not None and not isinstance(default_source, str):
            default_source = field(default_source, 'id')
        sources = [
            RemoteCard.from_stripe(source)
            for source in field(field(customer, 'sources'), 'data', [])
            if field(source, 'id')
        ]
        return cls(
            id=field(customer, 'id'),
            email=field(customer, 'email'),
            default_source=default_source,
            sources=sources,
            raw=as_dict(customer),
        )

    def default_card(self) -> Optional[RemoteCard]:
        for card in self.sources:
            if card.id == self.default_source:
                return card
        return None


class RemoteSubscription(BaseModel):
    id: str
    customer: Optional[str] = None
    plan: Optional[str] = None
    quantity: int = 1
    status: Optional[str] = None
    trial_end: Optional[datetime.datetime] = None
    current_period_end: Optional[datetime.datetime] = None
    cancel_at_period_end: bool = False
    ended_at: Optional[datetime.datetime] = None
    item_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    raw: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_stripe(cls, subscription: Any) -> 'RemoteSubscription':
        items = field(field(subscription, 'items'), 'data', [])
        item = items[0] if items else None
        plan = (
            field(field(item, 'price'), 'id')
            or field(field(item, 'plan'), 'id')
            or field(field(subscription, 'plan'), 'id')
        )
        customer = field(subscription, 'customer')
        if customer is not None and not isinstance(customer, str):
            customer = field(customer, 'id')
        # Newer API versions report the billing period on the item only.
        period_end = field(subscription, 'current_period_end') or field(item, 'current_period_end')
        return cls(
            id=field(subscription, 'id'),
            customer=customer,
            plan=plan,
            quantity=field(item, 'quantity') or field(subscription, 'quantity') or 1,
            status=field(subscription, 'status'),
            trial_end=from_timestamp(field(subscription, 'trial_end')),
            current_period_end=from_timestamp(period_end),
            cancel_at_period_end=bool(field(subscription, 'cancel_at_period_end', False)),
            ended_at=from_timestamp(field(subscription, 'ended_at')),
            item_id=field(item, 'id'),
            metadata=as_dict(field(subscription, 'metadata')),
            raw=as_dict(subscription),
        )
