from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from crm_automation.api.routes import router as api_router
from crm_automation.core.config import get_settings
from crm_automation.logging import configure_logging
from crm_automation.middleware.request_context import RequestContextMiddleware
from crm_automation.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("crm_automation.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("system.started", extra={"operation": "startup"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("crm-automation", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
