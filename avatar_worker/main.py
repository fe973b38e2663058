import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import requests
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI
from supabase import Client, create_client

from . import metrics
from .auth_middleware import WorkerAuthMiddleware
from .config import Settings
from .kie import KieClient
from .pipeline import Services, billing_router, callback_router, generation_router
from .pipeline.ledger import CreditLedger
from .pipeline.store import GenerationStore
from .provider_factory import ProviderFactory
from .stitcher import CloudinaryStitcher

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_supabase(settings: Settings) -> Client:
    if not settings.supabase.url or not settings.supabase.service_role_key:
        raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
    return create_client(settings.supabase.url, settings.supabase.service_role_key)


def build_services(
    settings: Settings,
    supabase: Client,
    session: Optional[requests.Session] = None,
    http: Optional[httpx.Client] = None,
) -> Services:
    """Wire every component from explicit settings and clients."""
    store = GenerationStore(supabase)
    ledger = CreditLedger(supabase, store)
    providers = ProviderFactory(KieClient(settings.kie, session), store, settings)
    stitcher = CloudinaryStitcher(settings.cloudinary, http)
    return Services.wire(store, ledger, providers, stitcher)


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Worker starting up ({settings.environment})...")
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(settings, create_supabase(settings))
        yield
        logger.info("Worker shutting down...")

    app = FastAPI(title="Avatar video worker", lifespan=lifespan)
    app.state.settings = settings
    app.state.services = services
    app.add_middleware(WorkerAuthMiddleware, secret=settings.worker_secret, environment=settings.environment)

    app.include_router(generation_router)
    app.include_router(callback_router)
    app.include_router(billing_router)

    @app.get("/health")
    def health_check():
        """Verify the worker is running and its integrations are configured."""
        return {
            "status": "ok",
            "environment": settings.environment,
            "kie_api_key_set": bool(settings.kie.api_key),
            "supabase_url_set": bool(settings.supabase.url),
            "cloudinary_configured": settings.cloudinary.configured,
            "callback_base": settings.public_base_url,
        }

    @app.get("/metrics")
    def metrics_endpoint():
        """Return a snapshot of all worker metrics."""
        return metrics.get_snapshot()

    return app


load_dotenv()
app = create_app()


if __name__ == "__main__":
    uvicorn.run("avatar_worker.main:app", host="0.0.0.0", port=8000)
