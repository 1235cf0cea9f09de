"""Application factory.

Run with ``uvicorn billing.main:create_app --factory``. Settings, the
regional datastore and the provider adapters are built once here and handed
to the components; nothing else holds a client.
"""
import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI

from billing.checkout import CheckoutService
from billing.config import Settings
from billing.confirmation import PaymentConfirmationResolver
from billing.datastore import Datastore, build_datastore
from billing.entitlements import EntitlementApplier
from billing.errors import register_error_handlers
from billing.ledger import WebhookLedger
from billing.logging_config import configure_logging
from billing.oracle import AppleStatusOracle
from billing.providers.base import ProviderAdapter
from billing.providers.registry import build_providers
from billing.routes import router
from billing.webhooks import router as webhook_router

logger = logging.getLogger(__name__)


class Services:
    def __init__(self, settings: Settings, store: Datastore, providers: Dict[str, ProviderAdapter]):
        self.settings = settings
        self.store = store
        self.providers = providers
        self.applier = EntitlementApplier(store)
        self.resolver = PaymentConfirmationResolver(store, providers, self.applier, settings)
        self.checkout = CheckoutService(store, self.resolver)
        self.ledger = WebhookLedger(store)
        self.oracle = AppleStatusOracle(store, providers.get("apple"), self.applier)

    def close(self) -> None:
        closed = set()
        for provider in self.providers.values():
            # adapters built together share one HTTP pool
            if id(provider.http) not in closed:
                provider.close()
                closed.add(id(provider.http))
        self.store.close()


def create_app(
    settings: Optional[Settings] = None,
    datastore: Optional[Datastore] = None,
    providers: Optional[Dict[str, ProviderAdapter]] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level, settings.log_format)
    if settings.verification_bypassed:
        logger.warning("WEBHOOK SIGNATURE VERIFICATION IS DISABLED (development only)")

    store = datastore or build_datastore(settings)
    services = Services(settings, store, build_providers(settings) if providers is None else providers)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("billing service started", extra={"region": settings.region, "providers": sorted(services.providers)})
        yield
        services.close()

    app = FastAPI(title="Billing Service", lifespan=lifespan)
    app.state.services = services
    register_error_handlers(app)
    app.include_router(router)
    app.include_router(webhook_router)

    @app.get("/healthz")
    def healthz():
        return {"status": "ok", "region": settings.region}

    return app
