"""Bunker fuel surcharge for a port pair and container type."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import FuelPrice, Port, PortDistance
from .containers import FUEL_FACTORS, ContainerType
from .statistics import round_half_up

logger = logging.getLogger(__name__)

BASE_FUEL_PRICE = 400.0  # USD/t already priced into index rates
SURCHARGE_PER_1000_KM = 0.15
SEA_ROUTE_FACTOR = 1.4  # sea lanes vs great-circle
DEFAULT_DISTANCE_KM = 10000.0
EARTH_RADIUS_KM = 6371.0

DEFAULT_FUEL_PRICES = {
    "VLSFO": 550.0,
    "HSFO": 450.0,
    "MGO": 650.0,
}


@dataclass(frozen=True)
class FuelSurcharge:
    surcharge: float
    fuel_price: float
    fuel_type: str
    distance_km: float
    container_factor: float


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def compute_surcharge(fuel_price: float, container_factor: float, distance_km: float) -> float:
    difference = max(0.0, fuel_price - BASE_FUEL_PRICE)
    return round_half_up(difference * container_factor * (distance_km / 1000.0) * SURCHARGE_PER_1000_KM)


class FuelSurchargeCalculator:
    def __init__(self, session_factory: Callable[[], Session], fuel_type: str = "VLSFO"):
        self._session_factory = session_factory
        self.fuel_type = fuel_type

    def current_price(self, db: Session, fuel_type: str) -> float:
        price = db.execute(
            select(FuelPrice.price)
            .where(FuelPrice.fuel_type == fuel_type)
            .order_by(FuelPrice.price_date.desc())
            .limit(1)
        ).scalar_one_or_none()
        if price is not None:
            return float(price)
        logger.info(f"No stored {fuel_type} price, using default")
        return DEFAULT_FUEL_PRICES.get(fuel_type, DEFAULT_FUEL_PRICES["VLSFO"])

    def distance_km(self, db: Session, origin: str, destination: str) -> float:
        stored = db.execute(
            select(PortDistance.distance_km).where(
                PortDistance.origin_code == origin,
                PortDistance.destination_code == destination,
            )
        ).scalar_one_or_none()
        if stored is not None:
            return float(stored)

        ports = {
            p.code: p
            for p in db.execute(select(Port).where(Port.code.in_([origin, destination]))).scalars()
        }
        o, d = ports.get(origin), ports.get(destination)
        if o is None or d is None or None in (o.latitude, o.longitude, d.latitude, d.longitude):
            return DEFAULT_DISTANCE_KM

        distance = round_half_up(
            haversine_km(float(o.latitude), float(o.longitude), float(d.latitude), float(d.longitude))
            * SEA_ROUTE_FACTOR
        )
        db.add(PortDistance(origin_code=origin, destination_code=destination, distance_km=distance))
        db.commit()
        return distance

    def surcharge_for(
        self, origin: str, destination: str, container_type: "ContainerType | str"
    ) -> Optional[FuelSurcharge]:
        container = ContainerType.parse(container_type)
        factor = FUEL_FACTORS[container]
        with self._session_factory() as db:
            price = self.current_price(db, self.fuel_type)
            distance = self.distance_km(db, origin, destination)

        surcharge = compute_surcharge(price, factor, distance)
        logger.info(f"Fuel surcharge {origin}->{destination} {container.value}: {surcharge}")
        return FuelSurcharge(
            surcharge=surcharge,
            fuel_price=price,
            fuel_type=self.fuel_type,
            distance_km=distance,
            container_factor=factor,
        )
