"""API routers for the resort payments backend."""
from fastapi import APIRouter

from . import apikeys, checkout, health, payments, refunds, stripe_checkout


def get_api_router() -> APIRouter:
    """Return the root API router."""

    api_router = APIRouter()
    api_router.include_router(health.router)
    api_router.include_router(checkout.router)
    api_router.include_router(stripe_checkout.router)
    api_router.include_router(payments.router)
    api_router.include_router(refunds.router)
    api_router.include_router(apikeys.router)
    return api_router
