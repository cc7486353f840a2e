from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import get_settings
from app.dependencies.services import close_clients

# Import routers directly from submodules
from app.health import router as health_router
from app.mock_data_view import router as mock_data_router
from app.tools.customers import router as customers_router
from app.tools.generation import router as generation_router
from app.tools.invoice import router as invoice_router
from app.tools.users import router as users_router


def configure_logging() -> None:
    """Ensure application logs use the INFO level by default."""
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        )
    else:
        root_logger.setLevel(logging.INFO)

# Configure logging as soon as the module is loaded
configure_logging()

logger = logging.getLogger(__name__)

_SECRET_FIELDS = {
    "backend": {"api_key"},
    "twilio": {"auth_token"},
    "retell": {"api_key"},
    "stripe": {"api_key"},
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manages application startup and shutdown events.
    """
    # --- Startup Logic ---
    settings = get_settings()

    # Log application settings on startup
    settings_snapshot = settings.model_dump(mode="json", exclude=_SECRET_FIELDS)
    logger.info("Application settings on startup: %s", settings_snapshot)
    if settings.use_mock_data:
        logger.info("Serving customers, usage and invoices from the in-process mock store.")
    logger.info("Application startup complete.")

    try:
        yield  # The application is now running
    finally:
        # --- Shutdown Logic ---
        logger.info("Closing outbound client connections.")
        await close_clients()
        logger.info("Application shutdown complete.")


# --- Application Setup ---

settings = get_settings()
app = FastAPI(
    title=settings.app_name,
    lifespan=lifespan,
    redirect_slashes=False
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[str(origin).rstrip("/") for origin in settings.cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Include Routers ---

app.include_router(customers_router, prefix="/billing/customers")
app.include_router(invoice_router, prefix="/billing/invoices")
app.include_router(generation_router, prefix="/billing/wizard")
app.include_router(users_router, prefix="/billing/users")
app.include_router(health_router)
app.include_router(mock_data_router)
