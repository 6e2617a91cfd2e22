"""Data provider interface.

A provider turns some external source (a paired device, a cloud API) into
``DailyPayload`` records keyed by local calendar day.  The sync
orchestrator never talks to a source directly: it goes through
``SourceFusion``, which fans out to every registered provider.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Sequence

from src.recovery.base import DailyPayload, SampleType, SourceKind


class DataProvider(ABC):
    """Abstract base class for recovery data providers.

    Subclasses must implement:
        - fetch_daily()

    Optional overrides:
        - fetch_raw()   (providers backed by raw device streams)
    """

    #: Unique slug recorded in DailyMetrics.sources (e.g. 'polar', 'whoop').
    SOURCE_ID: str = "unknown"

    #: Human-readable name for logging and UI.
    DISPLAY_NAME: str = "Unknown Source"

    #: Precedence tier used by fusion.
    KIND: SourceKind = SourceKind.CLOUD

    @abstractmethod
    async def fetch_daily(self, start: date, end: date) -> list[DailyPayload]:
        """Return payloads for days in the closed range [start, end].

        Days the source knows nothing about may be omitted.

        Raises:
            ProviderFetchError: If the source cannot be reached or its
                                response is unusable.
        """

    async def fetch_raw(
        self, start: datetime, end: datetime, sample_type: SampleType
    ) -> Sequence[object]:
        """Raw samples in [start, end).  Providers without raw access return nothing."""
        return []

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.SOURCE_ID} ({self.KIND.value})>"
