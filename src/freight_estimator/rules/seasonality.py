"""Seasonality factors per region pair and month.

Factors are derived from past estimates in ``calculation_history``: for each
region pair, the mean rate of a month divided by the mean rate over all
months. Lookups degrade from the exact pair to the origin region average and
finally to the global average for the month, with reduced confidence.
"""
from __future__ import annotations

import datetime
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..models import CalculationHistory, SeasonalityFactorRow
from .regions import UNKNOWN_REGION
from .statistics import mean

logger = logging.getLogger(__name__)

MIN_DATA_POINTS = 3
FULL_CONFIDENCE_POINTS = 10.0
ORIGIN_AVERAGE_CONFIDENCE = 0.5
GLOBAL_AVERAGE_CONFIDENCE = 0.2
STALE_AFTER = datetime.timedelta(days=1)


@dataclass(frozen=True)
class SeasonalityFactor:
    factor: float
    confidence: float


class SeasonalityProvider:
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def factor_for(self, origin_region: str, destination_region: str, month: int) -> Optional[SeasonalityFactor]:
        with self._session_factory() as db:
            row = db.execute(
                select(SeasonalityFactorRow).where(
                    SeasonalityFactorRow.origin_region == origin_region,
                    SeasonalityFactorRow.destination_region == destination_region,
                    SeasonalityFactorRow.month == month,
                )
            ).scalar_one_or_none()
            if row is not None:
                return SeasonalityFactor(float(row.factor), float(row.confidence))

            origin_avg = db.execute(
                select(func.avg(SeasonalityFactorRow.factor), func.avg(SeasonalityFactorRow.confidence)).where(
                    SeasonalityFactorRow.origin_region == origin_region,
                    SeasonalityFactorRow.month == month,
                )
            ).one()
            if origin_avg[0] is not None:
                return SeasonalityFactor(float(origin_avg[0]), float(origin_avg[1]) * ORIGIN_AVERAGE_CONFIDENCE)

            global_avg = db.execute(
                select(func.avg(SeasonalityFactorRow.factor), func.avg(SeasonalityFactorRow.confidence)).where(
                    SeasonalityFactorRow.month == month
                )
            ).one()
            if global_avg[0] is not None:
                return SeasonalityFactor(float(global_avg[0]), float(global_avg[1]) * GLOBAL_AVERAGE_CONFIDENCE)

        return None


def compute_factors(
    history: List[Tuple[str, str, datetime.datetime, float]],
) -> Dict[Tuple[str, str, int], SeasonalityFactor]:
    """Monthly factors from ``(origin_region, destination_region, created_at, rate)`` tuples."""

    by_pair: Dict[Tuple[str, str], Dict[int, List[float]]] = defaultdict(lambda: defaultdict(list))
    for origin_region, destination_region, created_at, rate in history:
        if not origin_region or not destination_region:
            continue
        if UNKNOWN_REGION in (origin_region, destination_region):
            continue
        by_pair[(origin_region, destination_region)][created_at.month].append(rate)

    factors: Dict[Tuple[str, str, int], SeasonalityFactor] = {}
    for (origin_region, destination_region), months in by_pair.items():
        overall = mean([r for rates in months.values() for r in rates])
        if overall <= 0:
            logger.info(f"Skipping {origin_region} -> {destination_region}: non-positive average rate")
            continue
        for month in range(1, 13):
            rates = months.get(month, [])
            monthly = mean(rates)
            if len(rates) >= MIN_DATA_POINTS and monthly > 0:
                factor = SeasonalityFactor(monthly / overall, min(1.0, len(rates) / FULL_CONFIDENCE_POINTS))
            else:
                factor = SeasonalityFactor(1.0, 0.0)
            factors[(origin_region, destination_region, month)] = factor
    return factors


def analyze_seasonality(db: Session, now: Optional[datetime.datetime] = None) -> int:
    """Recompute ``seasonality_factors`` from the calculation history. Returns rows written."""

    now = now or datetime.datetime.utcnow()
    rows = db.execute(
        select(
            CalculationHistory.origin_region,
            CalculationHistory.destination_region,
            CalculationHistory.created_at,
            CalculationHistory.rate,
        )
    ).all()
    factors = compute_factors([(o, d, ts, float(rate)) for o, d, ts, rate in rows])

    existing = {
        (r.origin_region, r.destination_region, r.month): r
        for r in db.execute(select(SeasonalityFactorRow)).scalars()
    }
    for key, value in factors.items():
        row = existing.get(key)
        if row is None:
            row = SeasonalityFactorRow(origin_region=key[0], destination_region=key[1], month=key[2])
            db.add(row)
        row.factor = value.factor
        row.confidence = value.confidence
        row.last_updated = now
    db.commit()

    logger.info(f"Seasonality analysis updated {len(factors)} factors")
    return len(factors)


def refresh_if_stale(db: Session, now: Optional[datetime.datetime] = None, force: bool = False) -> bool:
    now = now or datetime.datetime.utcnow()
    if not force:
        last = db.execute(select(func.max(SeasonalityFactorRow.last_updated))).scalar_one_or_none()
        if last is not None and now - last < STALE_AFTER:
            logger.info("Seasonality factors are up to date")
            return False
    analyze_seasonality(db, now=now)
    return True
