import logging
import math
import os
from typing import Any, Dict

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()


def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "storebilling"),
    user=os.getenv("DB_USER", "storebilling"),
    password=os.getenv("DB_PASSWORD", "storebilling"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]

logger = logging.getLogger("storebilling")


def get_conn():
    return psycopg2.connect(**DB_CFG)


from storebilling import app_context  # noqa: E402

app_context.configure(get_conn=get_conn)

from storebilling.app.routes.billing import router as billing_router  # noqa: E402
from storebilling.app.services.billing import get_billing_config  # noqa: E402
from storebilling.subscription_jobs import (  # noqa: E402
    get_subscription_job_metrics,
    shutdown_subscription_scheduler,
    start_subscription_scheduler,
)

app = FastAPI(title="Store Subscription Billing API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing_router)


@app.on_event("startup")
def _start_subscription_scheduler() -> None:
    config = get_billing_config()
    if not config.scheduler_enabled:
        logger.info("Subscription scheduler disabled; relying on external cron")
        return
    start_subscription_scheduler(hour_utc=config.job_hour_utc)


@app.on_event("shutdown")
def _shutdown_subscription_scheduler() -> None:
    shutdown_subscription_scheduler()


@app.get("/api/healthz")
def healthz():
    return {"ok": True}


@app.get("/api/metrics/subscription-job")
def read_subscription_job_metrics() -> Dict[str, Any]:
    return get_subscription_job_metrics()
