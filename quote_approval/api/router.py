from fastapi import APIRouter

from quote_approval.api.routes import health, quotes

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(quotes.router, prefix="/quotes", tags=["quotes"])
