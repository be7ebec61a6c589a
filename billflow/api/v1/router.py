from fastapi import APIRouter

from billflow.api.v1.endpoints import invoices


api_router = APIRouter(prefix="/api/v1")

api_router.include_router(invoices.router, prefix="/invoices", tags=["Invoices"])
