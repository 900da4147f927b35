import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from lender_inbox.api.v1.api import api_router
from lender_inbox.config import get_settings
from lender_inbox.database import create_tables
from lender_inbox.services.db_service import get_store
from lender_inbox.services.listener import ListenerDaemon

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Lender Inbox",
    description="Captures lender offer replies from application mailboxes",
    version="1.0.0"
)

origins = [
    "http://localhost:3000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup():
    """Create database tables and start the mailbox daemon if enabled."""
    create_tables()
    logger.info("✅ Database tables created/verified")

    app.state.listener_daemon = None
    if settings.daemon_enabled:
        daemon = ListenerDaemon(get_store(), settings=settings)
        daemon.start()
        app.state.listener_daemon = daemon


@app.on_event("shutdown")
def on_shutdown():
    daemon = getattr(app.state, "listener_daemon", None)
    if daemon is not None:
        daemon.stop()


app.include_router(api_router)


@app.get("/")
def health_check():
    return {"status": "ok"}
