"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Sequence

from fastapi import Depends, HTTPException, Request

from src.config import Settings, get_settings
from src.recovery.baseline import BaselineTracker
from src.recovery.config_loader import ScoringConfig, get_scoring_config
from src.recovery.providers import DataProvider, WhoopProvider
from src.recovery.publisher import ScorePublisher
from src.recovery.source_fusion import SourceFusion
from src.recovery.store import MetricsStore
from src.recovery.sync.orchestrator import SyncOrchestrator
from src.recovery.sync.scheduler import SyncPolicy, SyncScheduler
from src.recovery.vigor_score import VigorScorer


@dataclass
class RecoveryServices:
    """Every long-lived recovery component, wired once per app."""

    settings: Settings
    config: ScoringConfig
    store: MetricsStore
    fusion: SourceFusion
    scorer: VigorScorer
    baseline: BaselineTracker
    publisher: ScorePublisher
    orchestrator: SyncOrchestrator
    scheduler: SyncScheduler


def default_providers(settings: Settings, config: ScoringConfig) -> list[DataProvider]:
    """Providers configurable from the environment alone."""
    providers: list[DataProvider] = []
    if settings.whoop_access_token:
        providers.append(
            WhoopProvider(
                settings.whoop_access_token,
                api_base=settings.whoop_api_base,
                tz=settings.tz,
                config=config,
            )
        )
    return providers


def build_services(
    settings: Settings,
    store: MetricsStore,
    providers: Sequence[DataProvider] | None = None,
    config: ScoringConfig | None = None,
) -> RecoveryServices:
    config = config or get_scoring_config()
    if providers is None:
        providers = default_providers(settings, config)
    tz = settings.tz

    fusion = SourceFusion(providers, config)
    scorer = VigorScorer(config)
    baseline = BaselineTracker(store, config)
    publisher = ScorePublisher()
    orchestrator = SyncOrchestrator(
        store,
        fusion,
        scorer=scorer,
        baseline=baseline,
        publisher=publisher,
        config=config,
        tz=tz,
    )
    scheduler = SyncScheduler(
        orchestrator,
        SyncPolicy(config.sync, tz),
        timeout_seconds=settings.sync_timeout_seconds,
    )
    return RecoveryServices(
        settings=settings,
        config=config,
        store=store,
        fusion=fusion,
        scorer=scorer,
        baseline=baseline,
        publisher=publisher,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )


async def get_services(request: Request) -> RecoveryServices:
    """Return the services container created in the app lifespan."""
    services: RecoveryServices | None = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Recovery services not initialized")
    return services


# Annotated shortcuts for route signatures
Services = Annotated[RecoveryServices, Depends(get_services)]
AppSettings = Annotated[Settings, Depends(get_settings)]
