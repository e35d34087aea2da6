from fastapi import APIRouter
from celebthumb.api.v1 import credits, subscriptions, payments

api_router = APIRouter()

# Include all v1 routers
api_router.include_router(credits.router)
api_router.include_router(subscriptions.router)
api_router.include_router(payments.router)
