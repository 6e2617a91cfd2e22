"""Latest-score publication.

The orchestrator publishes today's score after each recompute.  Consumers
(a widget feed, a push channel, the HTTP layer) subscribe with a plain or
async callback and receive a ``LatestScoreSnapshot``.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Awaitable, Callable, Union

from src.recovery.base import MetricTag, utc_now
from src.recovery.vigor_score import VigorScore

logger = logging.getLogger("vigor.recovery.publisher")


@dataclass(frozen=True)
class LatestScoreSnapshot:
    """Serializable view of the most recent score.

    Attributes:
        day:             Day the score belongs to.
        score:           Composite 0–100.
        sub_scores:      Metric value -> 0–100 sub-score.
        missing_metrics: Metric values excluded from the composite.
        category:        'high', 'moderate' or 'low'.
        published_at:    UTC time of publication.
    """

    day: date
    score: float
    sub_scores: dict[str, float] = field(default_factory=dict)
    missing_metrics: tuple[str, ...] = ()
    category: str = "low"
    published_at: datetime = field(default_factory=utc_now)

    @property
    def has_missing_data(self) -> bool:
        return bool(self.missing_metrics)

    @classmethod
    def from_score(cls, score: VigorScore) -> "LatestScoreSnapshot":
        return cls(
            day=score.day,
            score=score.composite,
            sub_scores={m.value: v for m, v in score.sub_scores.items()},
            missing_metrics=tuple(sorted(m.value for m in score.missing_metrics)),
            category=score.category,
        )

    def sub_score(self, metric: MetricTag) -> float | None:
        return self.sub_scores.get(metric.value)

    def to_json(self) -> dict:
        return {
            "day": self.day.isoformat(),
            "score": round(self.score, 2),
            "sub_scores": {k: round(v, 2) for k, v in self.sub_scores.items()},
            "missing_metrics": list(self.missing_metrics),
            "has_missing_data": self.has_missing_data,
            "category": self.category,
            "published_at": self.published_at.isoformat(),
        }


Subscriber = Callable[[LatestScoreSnapshot], Union[None, Awaitable[None]]]


class ScorePublisher:
    """Fan out score updates to subscribers.

    A failing subscriber is logged and skipped; it never fails the caller.

    Usage::

        publisher = ScorePublisher()
        unsubscribe = publisher.subscribe(lambda snap: print(snap.score))
        await publisher.publish(score)
        unsubscribe()
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._latest: LatestScoreSnapshot | None = None

    @property
    def latest(self) -> LatestScoreSnapshot | None:
        return self._latest

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            self.unsubscribe(callback)

        return unsubscribe

    def unsubscribe(self, callback: Subscriber) -> None:
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass

    async def publish(self, score: VigorScore) -> LatestScoreSnapshot:
        snapshot = LatestScoreSnapshot.from_score(score)
        self._latest = snapshot
        logger.info(
            "Published Vigor score %.1f for %s (%s)", snapshot.score, snapshot.day, snapshot.category
        )
        for callback in list(self._subscribers):
            try:
                result = callback(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Score subscriber %r failed", callback)
        return snapshot
