import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from dotenv import load_dotenv

# Load env from quillpass/.env (tests configure the environment themselves)
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from quillpass.core.config import settings, validate_config  # noqa: E402
from quillpass.core.database import create_all_tables  # noqa: E402
from quillpass.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from quillpass.core.logging import configure_logging  # noqa: E402
from quillpass.core.middleware.metrics import MetricsMiddleware  # noqa: E402
from quillpass.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from quillpass.core.validation import validate_env  # noqa: E402
from quillpass.api import admin_billing, billing, health, metrics, transactions, usage  # noqa: E402

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("quillpass")
    logger.info("Starting QuillPass billing service...")
    app.state.startup_time = time.time()
    create_all_tables()
    try:
        yield
    finally:
        logger.info("Stopping QuillPass billing service...")


app = FastAPI(title="QuillPass - Billing", lifespan=lifespan)

# Middlewares
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, tags=["health"])
app.include_router(metrics.router, tags=["metrics"])
app.include_router(billing.router, prefix="/api", tags=["billing"])
app.include_router(transactions.router, prefix="/api", tags=["transactions"])
app.include_router(usage.router, prefix="/api", tags=["usage"])
app.include_router(admin_billing.router, prefix="/api", tags=["admin-billing"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("quillpass.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
