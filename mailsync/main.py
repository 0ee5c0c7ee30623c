"""
FastAPI server for the email sync engine.

Endpoints for:
- Account sync control and progress
- Sync failure management
- Conflict resolution
- Circuit breaker and adaptive polling status
"""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mailsync.core.config import SyncSettings, settings
from mailsync.core.credentials import CredentialVault, StoredTokenCredentials
from mailsync.core.database import DatabaseManager, DocumentStore
from mailsync.core.network import ConnectivityMonitor
from mailsync.providers.base import CredentialProvider, NetworkStatus, ProviderType
from mailsync.providers.email.base import EmailSyncConfig, SyncContext
from mailsync.providers.email.gmail_sync import GMAIL_FETCH_COST, GMAIL_LIST_COST
from mailsync.providers.registry import create_provider
from mailsync.routers import conflicts, sync
from mailsync.services.adaptive_interval import AdaptiveIntervalService
from mailsync.services.bankruptcy import SyncBankruptcyDetector
from mailsync.services.circuit_breaker import CircuitBreaker
from mailsync.services.conflict_manager import ConflictManager
from mailsync.services.rate_limiter import create_gmail_rate_limiter, create_outlook_rate_limiter
from mailsync.services.sync_failures import SyncFailureTracker
from mailsync.services.sync_progress import SyncProgressService
from mailsync.workers.sync_orchestrator import SyncOrchestrator

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def build_orchestrator(
    store: DocumentStore,
    credentials: CredentialProvider,
    network: NetworkStatus,
    config: SyncSettings = settings,
) -> SyncOrchestrator:
    """Wire every sync service from settings."""
    retry = config.retry_config()

    progress = SyncProgressService(store, collection_name=config.mongodb_collection_sync_state)
    failures = SyncFailureTracker(store, retry, collection_name=config.mongodb_collection_sync_failures)
    conflict_manager = ConflictManager(
        store,
        emails_collection=config.mongodb_collection_emails,
        pending_collection=config.mongodb_collection_pending_conflicts,
        audit_collection=config.mongodb_collection_conflict_audit,
        preferences_collection=config.mongodb_collection_conflict_preferences,
    )
    adaptive = AdaptiveIntervalService(
        store,
        min_interval=config.adaptive_min_interval_seconds,
        max_interval=config.adaptive_max_interval_seconds,
        enabled=config.adaptive_polling_enabled,
        collection_name=config.mongodb_collection_adaptive_interval,
    )
    bankruptcy = SyncBankruptcyDetector(
        store,
        progress,
        adaptive,
        threshold=timedelta(days=config.bankruptcy_threshold_days),
        emails_collection=config.mongodb_collection_emails,
    )

    context = SyncContext(
        emails=store.collection(config.mongodb_collection_emails),
        progress=progress,
        failures=failures,
        conflicts=conflict_manager,
        credentials=credentials,
        network=network,
        bankruptcy=bankruptcy,
    )

    engines = {
        ProviderType.GMAIL: create_provider(
            ProviderType.GMAIL,
            context,
            EmailSyncConfig(
                lookback_days=config.sync_lookback_days,
                page_size=config.gmail_page_size,
                checkpoint_interval=config.checkpoint_interval,
                list_cost=GMAIL_LIST_COST,
                fetch_cost=GMAIL_FETCH_COST,
                retry=retry,
            ),
            rate_limiter=create_gmail_rate_limiter(config.gmail_rate_limiter_config()),
        ),
        ProviderType.OUTLOOK: create_provider(
            ProviderType.OUTLOOK,
            context,
            EmailSyncConfig(
                lookback_days=config.sync_lookback_days,
                page_size=config.outlook_page_size,
                checkpoint_interval=config.checkpoint_interval,
                retry=retry,
            ),
            rate_limiter=create_outlook_rate_limiter(config.outlook_rate_limiter_config()),
        ),
    }

    return SyncOrchestrator(
        engines,
        context,
        circuit_breaker=CircuitBreaker(config.circuit_breaker_config()),
        adaptive_interval=adaptive,
        fixed_interval=config.sync_interval_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan manager - startup and shutdown."""
    # Startup
    logger.info("Starting email sync API...")

    db_manager: Optional[DatabaseManager] = None
    network: Optional[ConnectivityMonitor] = None

    if getattr(app.state, "orchestrator", None) is None:
        db_manager = DatabaseManager()
        await db_manager.connect()
        app.state.db = db_manager
        logger.info(f"Connected to database: {settings.mongodb_database}")

        credentials = StoredTokenCredentials(
            db_manager,
            CredentialVault(settings.credential_vault_key, settings.credential_vault_salt),
            {
                ProviderType.GMAIL: (settings.google_client_id, settings.google_client_secret),
                ProviderType.OUTLOOK: (settings.microsoft_client_id, settings.microsoft_client_secret),
            },
            collection_name=settings.mongodb_collection_oauth_tokens,
        )
        network = ConnectivityMonitor(
            settings.network_check_url,
            interval=settings.network_check_interval_seconds,
        )
        await network.check()
        network.start()

        app.state.orchestrator = build_orchestrator(db_manager, credentials, network)

        removed = await app.state.orchestrator.context.failures.cleanup_old_failures(
            timedelta(days=settings.failure_retention_days)
        )
        if removed:
            logger.info(f"Removed {removed} old sync failure records")

    orchestrator: SyncOrchestrator = app.state.orchestrator
    await orchestrator.start()
    logger.info(f"API ready at http://0.0.0.0:{settings.api_port}")

    yield

    # Shutdown
    logger.info("Shutting down email sync API...")
    await orchestrator.stop()

    if network is not None:
        await network.stop()
    if db_manager is not None:
        await db_manager.disconnect()
        logger.info("Database connection closed")


def create_app(orchestrator: Optional[SyncOrchestrator] = None) -> FastAPI:
    """Build the API app; a prebuilt orchestrator skips database wiring."""
    app = FastAPI(
        title="Email Sync API",
        description="Offline-first email sync engine for Gmail and Outlook.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(sync.router, prefix="/api/v1/sync", tags=["Sync"])
    app.include_router(conflicts.router, prefix="/api/v1/conflicts", tags=["Conflicts"])

    @app.get("/health", tags=["Health"])
    async def health():
        """Quick health check for load balancers."""
        return {"status": "healthy"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "mailsync.main:app",
        host="0.0.0.0",
        port=settings.api_port,
        reload=settings.debug,
    )
