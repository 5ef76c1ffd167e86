import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from quoteflow.routers import auth, directory, notifications, quotations
from quoteflow.services.lifecycle import lifecycle
from quoteflow.services.notification_store import notification_store

logger = logging.getLogger("quoteflow")

WILDCARD = ["*"]


def _csv_env(name: str) -> list[str]:
    values = [item.strip() for item in os.getenv(name, "*").split(",")]
    return [item for item in values if item] or WILDCARD


def _configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _install_middleware(application: FastAPI) -> None:
    origins = _csv_env("CORS_ORIGINS")
    application.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        # Credentials cannot be combined with a wildcard origin.
        allow_credentials=origins != WILDCARD,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type"],
        expose_headers=["Retry-After"],
    )
    hosts = _csv_env("TRUSTED_HOSTS")
    if hosts != WILDCARD:
        application.add_middleware(TrustedHostMiddleware, allowed_hosts=hosts)


_configure_logging()

app = FastAPI(title="QuoteFlow API", version="0.1.0")
_install_middleware(app)
for module in (auth, directory, quotations, notifications):
    app.include_router(module.router)

logger.info(
    "quoteflow_started db_path=%s payments=%s reminder_tiers=%s",
    lifecycle.store.db_path,
    lifecycle.payments.enabled,
    lifecycle.reminder_tiers,
)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/ready")
def ready():
    return {
        "status": "ready",
        "payments_configured": lifecycle.payments.enabled,
        "push_configured": notification_store.push_enabled,
        "reminder_tiers_minutes": lifecycle.reminder_tiers,
    }
