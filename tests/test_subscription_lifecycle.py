import datetime

import pytest
from sqlalchemy.exc import SQLAlchemyError

from ss_cashier_svc.errors import InvalidStateError, RemoteRequestError, SubscriptionNotSavedError
from ss_cashier_svc.lifecycle import SubscriptionLifecycle
from ss_cashier_svc.models.base import to_timestamp, utcnow
from ss_cashier_svc.models.subscription import Subscription


def reload(db_session, stripe_id='sub_main') -> Subscription:
    db_session.expire_all()
    return db_session.query(Subscription).filter(Subscription.stripe_id == stripe_id).one()


def test_update_quantity_changes_stripe_then_local(billable, gateway, make_subscription, db_session):
    make_subscription(quantity=2)

    billable.lifecycle().update_quantity(5)

    _, subscription_id, update_data = gateway.calls_to('update_subscription')[0]
    assert subscription_id == 'sub_main'
    assert update_data['items'] == [{'id': 'si_sub_main', 'quantity': 5}]
    assert update_data['proration_behavior'] == 'create_prorations'
    assert reload(db_session).quantity == 5


def test_no_prorate_is_forwarded(billable, gateway, make_subscription):
    make_subscription()

    billable.lifecycle().no_prorate().update_quantity(2)

    assert gateway.calls_to('update_subscription')[0][2]['proration_behavior'] == 'none'


def test_increment_quantity(billable, make_subscription, db_session):
    make_subscription(quantity=2)

    billable.lifecycle().increment_quantity(3)

    assert reload(db_session).quantity == 5


def test_increment_and_invoice_triggers_invoice(billable, gateway, make_subscription, db_session):
    make_subscription(quantity=1)

    billable.lifecycle().increment_and_invoice()

    assert reload(db_session).quantity == 2
    assert len(gateway.calls_to('create_and_pay_invoice')) == 1


def test_decrement_quantity_never_goes_below_one(billable, gateway, make_subscription, db_session):
    make_subscription(quantity=2)
    lifecycle = billable.lifecycle()

    lifecycle.decrement_quantity(10)
    lifecycle.decrement_quantity()

    assert reload(db_session).quantity == 1
    sent = [call[2]['items'][0]['quantity'] for call in gateway.calls_to('update_subscription')]
    assert sent == [1, 1]


def test_update_quantity_rejects_zero(billable, gateway, make_subscription):
    make_subscription()

    with pytest.raises(ValueError):
        billable.lifecycle().update_quantity(0)
    assert gateway.calls_to('update_subscription') == []


def test_remote_failure_leaves_local_row_untouched(billable, gateway, make_subscription, db_session):
    make_subscription(quantity=2)
    gateway.fail_on.add('update_subscription')

    with pytest.raises(RemoteRequestError):
        billable.lifecycle().update_quantity(7)

    assert reload(db_session).quantity == 2


def test_swap_inherits_quantity_and_invoices(billable, gateway, make_subscription, db_session):
    make_subscription(plan='price_a', quantity=3, ends_at=utcnow() + datetime.timedelta(days=4))

    billable.lifecycle().swap('price_b')

    update_data = gateway.calls_to('update_subscription')[0][2]
    assert update_data['items'] == [{'id': 'si_sub_main', 'price': 'price_b', 'quantity': 3}]
    assert update_data['trial_end'] == 'now'
    assert update_data['cancel_at_period_end'] is False
    assert 'billing_cycle_anchor' not in update_data
    assert len(gateway.calls_to('create_and_pay_invoice')) == 1

    stored = reload(db_session)
    assert stored.stripe_plan == 'price_b'
    assert stored.ends_at is None
    assert stored.quantity == 3
    assert stored.active() is True


def test_swap_keeps_current_trial(billable, gateway, make_subscription):
    trial_ends_at = (utcnow() + datetime.timedelta(days=5)).replace(microsecond=0)
    make_subscription(trial_ends_at=trial_ends_at)

    billable.lifecycle().swap('price_b')

    assert gateway.calls_to('update_subscription')[0][2]['trial_end'] == to_timestamp(trial_ends_at)


def test_swap_with_billing_cycle_anchor(billable, gateway, make_subscription):
    make_subscription()

    billable.lifecycle().anchor_billing_cycle_on('now').swap('price_b')

    assert gateway.calls_to('update_subscription')[0][2]['billing_cycle_anchor'] == 'now'


def test_swap_completes_when_invoice_is_rejected(billable, gateway, make_subscription, db_session):
    make_subscription(plan='price_a')
    gateway.invoice_rejected = True

    billable.lifecycle().swap('price_b')

    assert reload(db_session).stripe_plan == 'price_b'


def test_cancel_sets_grace_period_to_period_end(billable, gateway, make_subscription, db_session):
    make_subscription()
    period_end = gateway.retrieve_subscription('sub_main').current_period_end

    billable.lifecycle().cancel()

    assert gateway.calls_to('update_subscription')[0][2] == {'cancel_at_period_end': True}
    stored = reload(db_session)
    assert stored.ends_at == period_end
    assert stored.cancel_at_period_end is True
    assert stored.cancelled() is True
    assert stored.on_grace_period() is True
    assert stored.active() is True


def test_cancel_during_trial_ends_with_trial(billable, make_subscription, db_session):
    trial_ends_at = utcnow() + datetime.timedelta(days=3)
    make_subscription(trial_ends_at=trial_ends_at)

    billable.lifecycle().cancel()

    assert reload(db_session).ends_at == trial_ends_at


def test_cancel_then_resume_during_grace(billable, gateway, make_subscription, db_session):
    make_subscription(plan='price_basic')
    billable.lifecycle().cancel()

    billable.lifecycle().resume()

    update_data = gateway.calls_to('update_subscription')[-1][2]
    assert update_data['cancel_at_period_end'] is False
    assert update_data['items'] == [{'id': 'si_sub_main', 'price': 'price_basic'}]
    assert update_data['trial_end'] == 'now'
    stored = reload(db_session)
    assert stored.ends_at is None
    assert stored.cancel_at_period_end is False
    assert stored.current_period_end is not None
    assert stored.cancelled() is False


def test_resume_outside_grace_period_fails_without_side_effects(billable, gateway, make_subscription, db_session):
    ended = utcnow() - datetime.timedelta(days=1)
    make_subscription(ends_at=ended)
    calls_before = len(gateway.calls)

    with pytest.raises(InvalidStateError):
        billable.lifecycle().resume()

    assert len(gateway.calls) == calls_before
    assert reload(db_session).ends_at == ended


def test_resume_active_subscription_is_invalid(billable, make_subscription):
    make_subscription()

    with pytest.raises(InvalidStateError):
        billable.lifecycle().resume()


def test_cancel_now_ends_immediately(billable, gateway, make_subscription, db_session):
    make_subscription()

    billable.lifecycle().cancel_now()

    assert gateway.calls_to('cancel_subscription') == [('cancel_subscription', 'sub_main')]
    stored = reload(db_session)
    assert stored.ends_at <= utcnow()
    assert stored.status == 'canceled'
    assert stored.cancelled() is True
    assert stored.active() is False
    assert stored.valid() is False


def test_local_save_failure_after_remote_success(billable, gateway, make_subscription, db_session, monkeypatch):
    make_subscription(quantity=1)

    def failing_commit():
        raise SQLAlchemyError("Commit failed")

    monkeypatch.setattr(db_session, "commit", failing_commit)
    with pytest.raises(SubscriptionNotSavedError):
        billable.lifecycle().update_quantity(4)

    # Stripe kept the change.
    assert gateway.subscriptions['sub_main']['items']['data'][0]['quantity'] == 4


def test_lifecycle_for_unknown_name(billable):
    with pytest.raises(LookupError):
        billable.lifecycle('missing')


def test_as_stripe_subscription(billable, make_subscription):
    subscription = make_subscription(plan='price_basic')

    remote = SubscriptionLifecycle(billable, subscription).as_stripe_subscription()

    assert remote.id == 'sub_main'
    assert remote.plan == 'price_basic'


def test_resume_during_trial_keeps_trial_end(billable, gateway, make_subscription, db_session):
    trial_ends_at = utcnow() + datetime.timedelta(days=5)
    make_subscription(trial_ends_at=trial_ends_at)
    billable.lifecycle().cancel()

    billable.lifecycle().resume()

    update_data = gateway.calls_to('update_subscription')[-1][2]
    assert update_data['trial_end'] == to_timestamp(trial_ends_at)
    assert update_data['cancel_at_period_end'] is False
    stored = reload(db_session)
    assert stored.ends_at is None
    assert stored.on_trial() is True


def test_cancel_keeps_known_period_end_when_stripe_omits_it(billable, gateway, make_subscription, db_session):
    subscription = make_subscription()
    period_end = subscription.current_period_end
    gateway.subscriptions['sub_main']['current_period_end'] = None

    billable.lifecycle().cancel()

    stored = reload(db_session)
    assert stored.ends_at == period_end
    assert stored.current_period_end == period_end
    assert stored.on_grace_period() is True


def test_cancel_without_any_period_end(billable, gateway, make_subscription, db_session):
    subscription = make_subscription()
    subscription.current_period_end = None
    db_session.commit()
    gateway.subscriptions['sub_main']['current_period_end'] = None

    with pytest.raises(RemoteRequestError):
        billable.lifecycle().cancel()

    assert reload(db_session).ends_at is None
