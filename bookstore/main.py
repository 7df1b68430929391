import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from bookstore.config import settings as default_settings
from bookstore.infrastructure.http_clients import (
    HTTPCatalogClient, HTTPPaymentProcessorClient, SimulatedPaymentProcessor
)
from bookstore.presentation.api import router

logger = logging.getLogger(__name__)


def build_payment_processor(settings):
    if settings.PAYMENT_PROCESSOR_URL:
        return HTTPPaymentProcessorClient(settings.PAYMENT_PROCESSOR_URL, settings.API_TOKEN)
    logger.warning("PAYMENT_PROCESSOR_URL is not set, credit cards go through the simulated processor")
    return SimulatedPaymentProcessor()


def create_app(session_factory=None, catalog=None, payment_processor=None, settings=None) -> FastAPI:
    """Builds the API; collaborators can be injected, otherwise they come from settings"""
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if session_factory is None:
            from bookstore.database import AsyncSessionLocal, create_tables
            await create_tables()
            app.state.session_factory = AsyncSessionLocal
            logger.info("Tables created")
        yield
        logger.info("Application shutting down...")

    app = FastAPI(
        title="Bookstore Service",
        description="Orders, returns and refunds of the online bookstore",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.catalog = catalog or HTTPCatalogClient(settings.CATALOG_BASE_URL, settings.API_TOKEN)
    app.state.payment_processor = payment_processor or build_payment_processor(settings)

    app.include_router(router, prefix="/api")

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    return app


def run():
    import uvicorn

    logging.basicConfig(
        level=default_settings.LOG_LEVEL,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    run()
