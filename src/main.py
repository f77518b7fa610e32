"""
SLA Engine - Main Application
==============================

SLA rule engine and escalation tracker for CRM work items
(info requests and enquiries).

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services, ports and DTOs
- Domain: Entities, value objects, rule catalog and evaluator
- Infrastructure: Database, Slack, scheduler
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Configuration and Core
from src.config import settings
from src.core import ApplicationException

# Infrastructure
from src.infrastructure.database import (
    init_database, close_database, create_tables, get_session_context
)

# SLA Module
from src.sla.application import SLAEvaluationService, EvaluationSummary
from src.sla.domain import SlaEvaluator
from src.sla.infrastructure import (
    SlackNotifier, SLAScheduler, YAMLRuleSeedLoader,
    SQLAlchemySlaRuleRepository, SQLAlchemyWorkItemRepository,
    SQLAlchemyEscalationRepository
)
from src.sla.interfaces import sla_router

# Shared
from src.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler
)
from src.shared.infrastructure.logging import setup_logging, get_logger
from src.shared.infrastructure.grafana import get_grafana_exporter

logger = get_logger(__name__)


async def run_scheduled_pass(
    notifier: SlackNotifier,
    cancel: asyncio.Event
) -> EvaluationSummary:
    """One background evaluation pass in its own session."""
    async with get_session_context() as session:
        service = SLAEvaluationService(
            SQLAlchemyWorkItemRepository(session),
            SQLAlchemySlaRuleRepository(session),
            SQLAlchemyEscalationRepository(session),
            notifier,
            evaluator=SlaEvaluator(settings.sla_warning_fraction),
            page_size=settings.sla_page_size
        )
        summary = await service.run_pass(cancel=cancel)

    await get_grafana_exporter().export_sla_metrics(summary.to_dict())
    return summary


async def seed_rules() -> int:
    """Seed the rule table from YAML when it is empty."""
    async with get_session_context() as session:
        loader = YAMLRuleSeedLoader(settings.sla_rules_seed_path)
        return await loader.seed(SQLAlchemySlaRuleRepository(session))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Seed SLA rules
    4. Create Slack notifier
    5. Start SLA scheduler (unless the interval is 0)

    SHUTDOWN:
    1. Stop SLA scheduler
    2. Close Slack notifier
    3. Close database connections
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting SLA Engine", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    init_database()

    # Create tables (for development - use Alembic in production)
    await create_tables()
    await seed_rules()

    notifier = SlackNotifier()
    app.state.notifier = notifier
    app.state.settings = settings

    scheduler = None
    if settings.sla_evaluation_interval > 0:
        scheduler = SLAScheduler(interval_seconds=settings.sla_evaluation_interval)

        async def sla_evaluation_job(cancel: asyncio.Event) -> None:
            """Background SLA evaluation job."""
            await run_scheduled_pass(notifier, cancel)

        await scheduler.start(sla_evaluation_job)
    else:
        logger.info("SLA scheduler disabled")
    app.state.scheduler = scheduler

    logger.info("SLA Engine started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down SLA Engine")

    if scheduler:
        await scheduler.stop()

    await notifier.close()
    await close_database()

    logger.info("SLA Engine shutdown complete")


def create_app() -> FastAPI:
    """Build the FastAPI application."""
    application = FastAPI(
        title="SLA Engine API",
        description="""
    ## SLA Rule Engine & Escalation Tracker

    Evaluates CRM work items against configurable SLA rules.

    ### Rules (`/sla/rules`)
    - Matching by info type, priority and optional request channel,
      falling back to a single default rule
    - Response and resolution times in business hours per rule calendar
    - Escalation ladders with role, team or user targets

    ### Work Items (`/sla/work-items`, `/sla/dashboard`)
    - Batch ingest from the CRM
    - Status: `on_track`, `at_risk`, `breached`
    - Escalation history per work item

    ### Evaluation
    - Background pass every `SLA_EVALUATION_INTERVAL` seconds
    - `POST /sla/evaluate` runs a pass on demand
        """,
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    # === CORS Middleware ===
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # === Custom Middleware (from shared) ===
    application.add_middleware(LoggingMiddleware)
    application.add_middleware(CorrelationIDMiddleware)
    application.add_exception_handler(ApplicationException, application_exception_handler)
    application.add_exception_handler(Exception, global_exception_handler)

    # === Include Module Routers ===
    application.include_router(sla_router)

    @application.get("/health", tags=["Health"])
    async def health_check():
        """Health check endpoint for load balancers and orchestrators."""
        scheduler = getattr(application.state, "scheduler", None)
        return {
            "status": "healthy",
            "version": settings.app_version,
            "environment": settings.environment,
            "checks": {
                "sla_scheduler": "running" if scheduler and scheduler.is_running else "stopped",
                "slack": "configured" if settings.slack_webhook_url else "not_configured",
                "grafana": "configured" if get_grafana_exporter().is_enabled() else "not_configured"
            }
        }

    @application.get("/", tags=["Root"])
    async def root():
        """Root endpoint with API information."""
        return {
            "service": "SLA Engine",
            "version": settings.app_version,
            "docs": "/docs",
            "health": "/health",
            "modules": {
                "sla": {
                    "prefix": "/sla",
                    "endpoints": [
                        "GET/POST /sla/rules - List or create SLA rules",
                        "POST /sla/work-items - Ingest work item batch",
                        "GET /sla/work-items/{id} - Get work item SLA status",
                        "GET /sla/dashboard - Get dashboard",
                        "POST /sla/evaluate - Run an evaluation pass"
                    ]
                }
            }
        }

    return application


app = create_app()


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )
