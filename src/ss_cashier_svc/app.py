import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from ss_cashier_svc.config import get_settings
from ss_cashier_svc.models.base import init_db
from ss_cashier_svc.routers import stripe_router

logging.basicConfig(level=get_settings().log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(lifespan=lifespan)

# Include the Stripe router under the '/api/stripe' prefix
app.include_router(stripe_router.router, prefix="/api/stripe")
