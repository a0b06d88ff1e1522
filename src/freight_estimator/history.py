from __future__ import annotations

import datetime
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from .models import CalculationHistory
from .rules.rate_engine import AggregationResult
from .rules.regions import RegionResolver

logger = logging.getLogger(__name__)


class HistoryRecorder:
    """Persists one ``calculation_history`` row per estimate."""

    def __init__(self, session_factory: Callable[[], Session], regions: Optional[RegionResolver] = None):
        self._session_factory = session_factory
        self._regions = regions or RegionResolver(session_factory)

    def record(
        self,
        origin: str,
        destination: str,
        container_type: str,
        weight: int,
        result: AggregationResult,
        user_email: Optional[str] = None,
        now: Optional[datetime.datetime] = None,
    ) -> int:
        row = CalculationHistory(
            created_at=now or datetime.datetime.utcnow(),
            origin=origin,
            destination=destination,
            origin_region=self._regions.region_of(origin),
            destination_region=self._regions.region_of(destination),
            container_type=container_type,
            weight=weight,
            rate=result.rate,
            final_rate=result.final_rate,
            min_rate=result.min_rate,
            max_rate=result.max_rate,
            reliability=result.reliability,
            source_count=result.source_count,
            sources_used=list(result.sources_used),
            user_email=user_email,
        )
        with self._session_factory() as db:
            db.add(row)
            db.commit()
            db.refresh(row)
            logger.info(f"Recorded calculation {row.id} for {origin}->{destination} {container_type}")
            return row.id
