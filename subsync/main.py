import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from subsync.app.billing import BillingError
from subsync.app.billing.config import cors_allows_credentials, parse_cors_origins
from subsync.app.routes.billing import billing_error_handler, router as billing_router
from subsync.app.services.billing import get_billing_config
from subsync.app_context import ensure_admin_context

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("subsync")

app = FastAPI(title="Subscription Sync API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(parse_cors_origins()),
    allow_credentials=cors_allows_credentials(),
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(BillingError, billing_error_handler)
app.include_router(billing_router)


@app.on_event("startup")
def initialize_billing() -> None:
    config = get_billing_config()
    ensure_admin_context(config.admin)
    logger.info(
        "Billing initialized environment=%s placeholders=%s",
        config.environment,
        config.placeholders_enabled,
    )
