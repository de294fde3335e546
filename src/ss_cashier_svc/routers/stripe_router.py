import json
import logging
import datetime
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ss_cashier_svc.billable import Billable
from ss_cashier_svc.config import Settings, get_settings
from ss_cashier_svc.currency import Currency
from ss_cashier_svc.models.base import get_db, utcnow
from ss_cashier_svc.models.customer import Customer
from ss_cashier_svc.models.subscription import Subscription
from ss_cashier_svc.stripe_event_processor import WebhookOutcome, process_event
from ss_cashier_svc.stripe_integration import StripeIntegration

router = APIRouter()


def get_gateway(settings: Settings = Depends(get_settings)) -> StripeIntegration:
    return StripeIntegration.from_settings(settings)


def get_after_subscription_update() -> Optional[Callable[[Any], None]]:
    """Override to run application code after a webhook changed a customer's subscriptions."""
    return None


def get_billable(customer_id: int, db=Depends(get_db), gateway=Depends(get_gateway),
                 settings: Settings = Depends(get_settings)) -> Billable:
    customer = db.get(Customer, customer_id)
    if customer is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer not found")
    return Billable(customer, db, gateway, currency=Currency.from_settings(settings))


class SubscriptionRequest(BaseModel):
    plan: str
    name: str = 'default'
    quantity: int = Field(1, ge=1)
    trial_days: Optional[int] = Field(None, ge=0)
    skip_trial: bool = False
    coupon: Optional[str] = None
    metadata: Optional[Dict[str, str]] = None
    token: Optional[str] = None


class QuantityRequest(BaseModel):
    quantity: int = Field(..., ge=1)


class SwapRequest(BaseModel):
    plan: str
    prorate: bool = True
    billing_cycle_anchor: Optional[str] = None


class SubscriptionResponse(BaseModel):
    id: int
    name: str
    stripe_id: Optional[str] = None
    stripe_plan: str
    status: Optional[str] = None
    quantity: int
    client_reference_id: Optional[str] = None
    metadata_id: Optional[str] = None
    cancel_at_period_end: bool
    current_period_end: Optional[datetime.datetime] = None
    trial_ends_at: Optional[datetime.datetime] = None
    ends_at: Optional[datetime.datetime] = None
    active: bool
    on_trial: bool
    on_grace_period: bool
    cancelled: bool
    valid: bool


def serialize_subscription(subscription: Subscription) -> Dict[str, Any]:
    now = utcnow()
    return SubscriptionResponse(
        id=subscription.id,
        name=subscription.name,
        stripe_id=subscription.stripe_id,
        stripe_plan=subscription.stripe_plan,
        status=subscription.status,
        quantity=subscription.quantity,
        client_reference_id=subscription.client_reference_id,
        metadata_id=subscription.metadata_id,
        cancel_at_period_end=bool(subscription.cancel_at_period_end),
        current_period_end=subscription.current_period_end,
        trial_ends_at=subscription.trial_ends_at,
        ends_at=subscription.ends_at,
        active=subscription.active(now),
        on_trial=subscription.on_trial(now),
        on_grace_period=subscription.on_grace_period(now),
        cancelled=subscription.cancelled(),
        valid=subscription.valid(now),
    ).model_dump(mode='json')


def _error_response(e: Exception) -> HTTPException:
    if isinstance(e, LookupError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    logging.error(e, exc_info=True)
    if isinstance(e, ValueError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@router.post("/webhook", status_code=200)
async def process_webhook(request: Request, db=Depends(get_db), gateway=Depends(get_gateway),
                          settings: Settings = Depends(get_settings),
                          after_update=Depends(get_after_subscription_update)):
    payload_bytes = await request.body()
    payload = payload_bytes.decode('utf-8')

    if settings.stripe_endpoint_secret:
        sig_header = request.headers.get("Stripe-Signature")
        if not sig_header:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing Stripe-Signature header")
        try:
            gateway.construct_event(payload, sig_header, settings.stripe_endpoint_secret)
        except Exception as e:
            logging.error(e, exc_info=True)
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        event = json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")
    if not isinstance(event, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")

    try:
        outcome = await run_in_threadpool(
            process_event, event, db, gateway,
            after_subscription_update=after_update,
            metadata_attributes=settings.metadata_attributes,
        )
    except ValueError as ve:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(ve))
    except Exception as e:
        logging.error(e, exc_info=True)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Error processing webhook event")

    if outcome is WebhookOutcome.NOT_GENUINE:
        return Response(status_code=status.HTTP_200_OK)
    if outcome is WebhookOutcome.UNHANDLED:
        return JSONResponse(
            status_code=settings.unhandled_webhook_status,
            content={"success": True, "outcome": outcome.value},
        )
    return {"success": True, "outcome": outcome.value, "event_id": event.get('id')}


@router.post("/customers/{customer_id}/subscriptions", status_code=201)
def create_subscription(subscription_request: SubscriptionRequest, billable: Billable = Depends(get_billable)):
    builder = billable.new_subscription(subscription_request.name, subscription_request.plan)
    builder.quantity(subscription_request.quantity)
    if subscription_request.trial_days:
        builder.trial_days(subscription_request.trial_days)
    if subscription_request.skip_trial:
        builder.skip_trial()
    if subscription_request.coupon:
        builder.with_coupon(subscription_request.coupon)
    if subscription_request.metadata:
        builder.with_metadata(subscription_request.metadata)
    try:
        subscription = builder.create(subscription_request.token)
        return {"success": True, "subscription": serialize_subscription(subscription)}
    except Exception as e:
        raise _error_response(e)


@router.get("/customers/{customer_id}/subscriptions/{name}", status_code=200)
def get_subscription(name: str, billable: Billable = Depends(get_billable)):
    subscription = billable.subscription(name)
    if subscription is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")
    return {"success": True, "subscription": serialize_subscription(subscription)}


@router.put("/customers/{customer_id}/subscriptions/{name}/quantity", status_code=200)
def update_quantity(name: str, quantity_request: QuantityRequest, billable: Billable = Depends(get_billable)):
    try:
        lifecycle = billable.lifecycle(name).update_quantity(quantity_request.quantity)
        return {"success": True, "subscription": serialize_subscription(lifecycle.subscription)}
    except Exception as e:
        raise _error_response(e)


@router.post("/customers/{customer_id}/subscriptions/{name}/swap", status_code=200)
def swap_subscription(name: str, swap_request: SwapRequest, billable: Billable = Depends(get_billable)):
    try:
        lifecycle = billable.lifecycle(name)
        if not swap_request.prorate:
            lifecycle.no_prorate()
        if swap_request.billing_cycle_anchor:
            lifecycle.anchor_billing_cycle_on(swap_request.billing_cycle_anchor)
        lifecycle.swap(swap_request.plan)
        return {"success": True, "subscription": serialize_subscription(lifecycle.subscription)}
    except Exception as e:
        raise _error_response(e)


@router.delete("/customers/{customer_id}/subscriptions/{name}", status_code=200)
def cancel_subscription(name: str, immediately: bool = False, billable: Billable = Depends(get_billable)):
    try:
        lifecycle = billable.lifecycle(name)
        if immediately:
            lifecycle.cancel_now()
        else:
            lifecycle.cancel()
        return {"success": True, "subscription": serialize_subscription(lifecycle.subscription)}
    except Exception as e:
        raise _error_response(e)


@router.post("/customers/{customer_id}/subscriptions/{name}/resume", status_code=200)
def resume_subscription(name: str, billable: Billable = Depends(get_billable)):
    try:
        lifecycle = billable.lifecycle(name).resume()
        return {"success": True, "subscription": serialize_subscription(lifecycle.subscription)}
    except Exception as e:
        raise _error_response(e)


@router.get("/customers/{customer_id}/invoices/{invoice_id}", status_code=200)
def get_invoice(invoice_id: str, billable: Billable = Depends(get_billable)):
    try:
        invoice = billable.find_invoice_or_fail(invoice_id)
    except Exception as e:
        raise _error_response(e)
    date = invoice.date()
    return {
        "success": True,
        "invoice": {
            "id": invoice.id,
            "date": date.isoformat() if date else None,
            "total": invoice.total(),
            "subtotal": invoice.subtotal(),
            "starting_balance": invoice.starting_balance() if invoice.has_starting_balance() else None,
            "discount": invoice.discount() if invoice.has_discount() else None,
            "coupon": invoice.coupon(),
        },
    }
