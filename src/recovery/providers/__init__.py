"""Recovery data providers.

Each provider implements the DataProvider ABC and returns one
``DailyPayload`` per local day it has data for.

Available providers:
    DeviceProvider — raw device streams (intervals, HR, temperature, sleep) run through the signal extractor
    WhoopProvider  — Whoop developer API v1 (recovery + sleep records)
"""

from src.recovery.providers.base import DataProvider
from src.recovery.providers.device import DeviceProvider, RawSampleSource
from src.recovery.providers.whoop import WhoopProvider

__all__ = [
    "DataProvider",
    "DeviceProvider",
    "RawSampleSource",
    "WhoopProvider",
]
