"""FastAPI application exposing plan changes, webhooks and partner payout status."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .app.billing import BillingError
from .app.documents import PostgresDocumentStore, StoreUnavailableError
from .app.routes.billing import router as billing_router
from .app.routes.partners import router as partners_router
from .app.routes.webhooks import router as webhooks_router
from .app.services.billing import configure_billing, get_document_store
from .config import BillingConfig, load_billing_config

load_dotenv()

logger = logging.getLogger(__name__)


def error_payload(exc: BillingError, *, include_detail: bool) -> Dict[str, Any]:
    if include_detail:
        return dict(exc.payload)
    return {"error": exc.code, "message": exc.message}


def create_app(config: Optional[BillingConfig] = None) -> FastAPI:
    if config is not None:
        configure_billing(config)
    settings = config or load_billing_config()
    include_detail = not settings.is_production

    app = FastAPI(title="Home Service Billing API")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(billing_router)
    app.include_router(webhooks_router)
    app.include_router(partners_router)

    @app.exception_handler(BillingError)
    async def handle_billing_error(request: Request, exc: BillingError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message, exc_info=exc)
        return JSONResponse(status_code=exc.status_code, content=error_payload(exc, include_detail=include_detail))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        content: Dict[str, Any] = {"error": "invalid_input", "message": "Missing or invalid request fields"}
        if include_detail:
            content["errors"] = [
                {"loc": list(error.get("loc", ())), "msg": error.get("msg")} for error in exc.errors()
            ]
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=content)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        content: Dict[str, Any] = {"error": "internal_error", "message": "Internal server error"}
        if include_detail:
            content["detail"] = str(exc)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=content)

    @app.on_event("startup")
    def ensure_document_schema() -> None:
        store = get_document_store()
        if not isinstance(store, PostgresDocumentStore):
            return
        try:
            store.ensure_schema()
        except (psycopg2.Error, StoreUnavailableError):
            logger.exception("Could not ensure the documents table exists")

    return app


app = create_app()

# run: uvicorn homeservice.main:app --host 127.0.0.1 --port 8000 --reload
