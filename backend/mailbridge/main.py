"""
Mailbridge API
FastAPI application that receives Cloudmailin webhooks and normalizes them
into canonical messages.

Run locally (uvicorn comes with the "server" extra: pip install -e ".[server]"):

    CLOUDMAILIN_HTTP_POST_FORMAT=json uvicorn mailbridge.main:app --app-dir backend --reload
"""

import logging

from fastapi import FastAPI

from mailbridge.routers import inbound

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Mailbridge API",
    description="Inbound email normalization for Cloudmailin webhooks",
    version="0.1.0",
)

app.include_router(inbound.router, prefix="/api/cloudmailin", tags=["cloudmailin"])


@app.get("/")
async def root():
    return {"message": "Mailbridge API", "version": "0.1.0"}


@app.get("/health")
async def health():
    return {"status": "ok"}
