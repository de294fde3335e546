import os
os.environ.setdefault('DATABASE_URL', 'sqlite://')
os.environ.setdefault('STRIPE_API_KEY', 'sk_test_dummy')

import datetime
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ss_cashier_svc.app import app
from ss_cashier_svc.billable import Billable
from ss_cashier_svc.config import Settings, get_settings
from ss_cashier_svc.errors import RemoteRequestError
from ss_cashier_svc.models import Base, Customer, Subscription
from ss_cashier_svc.models.base import get_db, to_timestamp, utcnow
from ss_cashier_svc.resources import RemoteCard, RemoteCustomer, RemoteSubscription
from ss_cashier_svc.routers.stripe_router import get_after_subscription_update, get_gateway

test_engine = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


class FakeGateway:
    """In-memory stand-in for StripeIntegration that records every call."""

    def __init__(self):
        self.calls = []
        self.fail_on = set()
        self.customers = {}
        self.subscriptions = {}
        self.events = {}
        self.invoices = {}
        self.upcoming = None
        self.invoice_rejected = False
        self._counter = 0

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.fail_on:
            raise RemoteRequestError(f"Simulated {name} failure")

    def _next_id(self, prefix):
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def calls_to(self, name):
        return [call for call in self.calls if call[0] == name]

    # Helpers used by tests to seed Stripe state

    def add_customer(self, customer_id, email=None, cards=None, default_source=None):
        self.customers[customer_id] = {
            'id': customer_id,
            'email': email,
            'default_source': default_source,
            'sources': {'data': list(cards or [])},
        }
        return RemoteCustomer.from_stripe(self.customers[customer_id])

    def add_subscription(self, subscription_id, customer='cus_123', plan='price_basic', quantity=1,
                         status='active', current_period_end=None, trial_end=None, metadata=None):
        if current_period_end is None:
            current_period_end = utcnow() + datetime.timedelta(days=30)
        self.subscriptions[subscription_id] = {
            'id': subscription_id,
            'customer': customer,
            'status': status,
            'cancel_at_period_end': False,
            'current_period_end': to_timestamp(current_period_end),
            'trial_end': to_timestamp(trial_end) if trial_end else None,
            'ended_at': None,
            'metadata': dict(metadata or {}),
            'items': {'data': [{'id': f"si_{subscription_id}", 'price': {'id': plan}, 'quantity': quantity}]},
        }
        return RemoteSubscription.from_stripe(self.subscriptions[subscription_id])

    def add_event(self, event_id):
        self.events[event_id] = {'id': event_id}

    # Customers

    def create_customer(self, options):
        self._record('create_customer', options)
        return self.add_customer(self._next_id('cus'), email=options.get('email'))

    def retrieve_customer(self, customer_id):
        self._record('retrieve_customer', customer_id)
        if customer_id not in self.customers:
            raise RemoteRequestError('No such customer', code='resource_missing', http_status=404)
        return RemoteCustomer.from_stripe(self.customers[customer_id])

    def update_customer(self, customer_id, fields):
        self._record('update_customer', customer_id, fields)
        self.customers[customer_id].update(fields)
        return RemoteCustomer.from_stripe(self.customers[customer_id])

    def create_customer_source(self, customer_id, token):
        self._record('create_customer_source', customer_id, token)
        card = {'id': f"card_{token}", 'brand': 'Visa', 'last4': '4242'}
        self.customers[customer_id]['sources']['data'].append(card)
        return RemoteCard.from_stripe(card)

    def retrieve_token(self, token):
        self._record('retrieve_token', token)
        return RemoteCard(id=f"card_{token}", brand='Visa', last4='4242')

    # Subscriptions

    def create_subscription(self, customer_id, payload):
        self._record('create_subscription', customer_id, payload)
        trial_end = payload.get('trial_end')
        subscription = self.add_subscription(
            self._next_id('sub'),
            customer=customer_id,
            plan=payload['plan'],
            quantity=payload.get('quantity', 1),
            status='trialing' if isinstance(trial_end, int) else 'active',
        )
        if isinstance(trial_end, int):
            self.subscriptions[subscription.id]['trial_end'] = trial_end
        return RemoteSubscription.from_stripe(self.subscriptions[subscription.id])

    def retrieve_subscription(self, subscription_id):
        self._record('retrieve_subscription', subscription_id)
        if subscription_id not in self.subscriptions:
            raise RemoteRequestError('No such subscription', code='resource_missing', http_status=404)
        return RemoteSubscription.from_stripe(self.subscriptions[subscription_id])

    def update_subscription(self, subscription_id, update_data):
        self._record('update_subscription', subscription_id, update_data)
        stored = self.subscriptions[subscription_id]
        item = stored['items']['data'][0]
        for change in update_data.get('items', []):
            if 'price' in change:
                item['price'] = {'id': change['price']}
            if 'quantity' in change:
                item['quantity'] = change['quantity']
        if 'cancel_at_period_end' in update_data:
            stored['cancel_at_period_end'] = update_data['cancel_at_period_end']
        if 'trial_end' in update_data:
            trial_end = update_data['trial_end']
            stored['trial_end'] = trial_end if isinstance(trial_end, int) else None
        return RemoteSubscription.from_stripe(stored)

    def cancel_subscription(self, subscription_id):
        self._record('cancel_subscription', subscription_id)
        stored = self.subscriptions[subscription_id]
        stored['status'] = 'canceled'
        stored['ended_at'] = to_timestamp(utcnow())
        return RemoteSubscription.from_stripe(stored)

    # Invoices

    def create_and_pay_invoice(self, customer_id):
        self._record('create_and_pay_invoice', customer_id)
        if self.invoice_rejected:
            raise RemoteRequestError('Nothing to invoice for customer', code='invoice_no_customer_line_items',
                                     http_status=400)
        return {'id': self._next_id('in'), 'paid': True}

    def list_invoices(self, customer_id, params=None):
        self._record('list_invoices', customer_id, params)
        return list(self.invoices.values())

    def upcoming_invoice(self, customer_id):
        self._record('upcoming_invoice', customer_id)
        if self.upcoming is None:
            raise RemoteRequestError('No upcoming invoices for customer', code='invoice_upcoming_none',
                                     http_status=404)
        return self.upcoming

    def retrieve_invoice(self, invoice_id):
        self._record('retrieve_invoice', invoice_id)
        if invoice_id not in self.invoices:
            raise RemoteRequestError('No such invoice', code='resource_missing', http_status=404)
        return self.invoices[invoice_id]

    def create_invoice_item(self, options):
        self._record('create_invoice_item', options)
        return dict(options, id=self._next_id('ii'))

    # Charges

    def create_charge(self, options):
        self._record('create_charge', options)
        return dict(options, id=self._next_id('ch'))

    def create_refund(self, charge_id, options=None):
        self._record('create_refund', charge_id, options)
        return {'id': self._next_id('re'), 'charge': charge_id}

    # Events

    def retrieve_event(self, event_id):
        self._record('retrieve_event', event_id)
        if event_id not in self.events:
            raise RemoteRequestError('No such event', code='resource_missing', http_status=404)
        return self.events[event_id]

    def construct_event(self, payload, sig_header, endpoint_secret):
        if sig_header != 'valid_signature':
            raise ValueError('Invalid signature.')
        return {'payload': payload}


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def gateway():
    fake = FakeGateway()
    fake.add_customer('cus_123', email='jane@example.com')
    return fake


@pytest.fixture
def customer(db_session):
    customer = Customer(email='jane@example.com', stripe_id='cus_123')
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture
def billable(customer, db_session, gateway):
    return Billable(customer, db_session, gateway)


@pytest.fixture
def make_subscription(db_session, customer, gateway):
    """Create a subscription both in the fake gateway and locally."""

    def _make(stripe_id='sub_main', name='default', plan='price_basic', quantity=1, **fields):
        remote = gateway.add_subscription(stripe_id, customer=customer.stripe_id, plan=plan, quantity=quantity)
        subscription = Subscription(
            customer_id=customer.id,
            name=name,
            stripe_id=stripe_id,
            stripe_plan=plan,
            quantity=quantity,
            status='active',
            current_period_end=remote.current_period_end,
            **fields
        )
        db_session.add(subscription)
        db_session.commit()
        return subscription

    return _make


@pytest.fixture
def settings():
    settings = Settings()
    settings.stripe_endpoint_secret = None
    settings.unhandled_webhook_status = 200
    settings.metadata_attributes = {}
    return settings


@pytest.fixture
def hook_calls():
    return []


@pytest.fixture
def client(db_session, gateway, settings, hook_calls):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_after_subscription_update] = lambda: hook_calls.append
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
