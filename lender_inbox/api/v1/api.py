from fastapi import APIRouter
from lender_inbox.api.v1.endpoints import debug, imap_listener

api_router = APIRouter(prefix="/api/v1")

# Include all endpoint routers
api_router.include_router(imap_listener.router)
api_router.include_router(debug.router)
