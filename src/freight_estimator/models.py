from __future__ import annotations
from typing import Optional
import datetime
from decimal import Decimal

from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import String, Numeric, Date, DateTime, Integer, Text, JSON, UniqueConstraint

class Base(DeclarativeBase):
    pass


class Port(Base):
    __tablename__ = "ports"

    id: Mapped[int] = mapped_column(primary_key=True)
    code: Mapped[str] = mapped_column(String(12), unique=True)  # UN/LOCODE, e.g. CNSHA
    name: Mapped[str] = mapped_column(String(120))
    country: Mapped[Optional[str]] = mapped_column(String(100))
    region: Mapped[Optional[str]] = mapped_column(String(48))
    latitude: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 6))
    longitude: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 6))


class ContainerTypeRow(Base):
    __tablename__ = "container_types"

    id: Mapped[int] = mapped_column(primary_key=True)
    code: Mapped[str] = mapped_column(String(10), unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text)


class IndexConfig(Base):
    """
    Per-environment override of the index catalog.
    Either column may be null, in which case the catalog value stands.
    """

    __tablename__ = "index_config"

    id: Mapped[int] = mapped_column(primary_key=True)
    index_name: Mapped[str] = mapped_column(String(32), unique=True)
    weight: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 4))
    baseline_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4))
    last_updated: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime)


class FreightIndexValue(Base):
    """Latest published values per index, written by the scrapers."""

    __tablename__ = "freight_index_values"
    __table_args__ = (UniqueConstraint("index_name", "index_date", "source"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    index_name: Mapped[str] = mapped_column(String(32))
    current_index: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    change: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    index_date: Mapped[datetime.date] = mapped_column(Date)
    source: Mapped[Optional[str]] = mapped_column(String(120))


class SeasonalityFactorRow(Base):
    __tablename__ = "seasonality_factors"
    __table_args__ = (UniqueConstraint("origin_region", "destination_region", "month"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    origin_region: Mapped[str] = mapped_column(String(48))
    destination_region: Mapped[str] = mapped_column(String(48))
    month: Mapped[int] = mapped_column(Integer)
    factor: Mapped[Decimal] = mapped_column(Numeric(8, 4))
    confidence: Mapped[Decimal] = mapped_column(Numeric(6, 4))
    last_updated: Mapped[datetime.datetime] = mapped_column(DateTime)


class FuelPrice(Base):
    __tablename__ = "fuel_prices"
    __table_args__ = (UniqueConstraint("price_date", "fuel_type"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    fuel_type: Mapped[str] = mapped_column(String(16))  # VLSFO / HSFO / MGO
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2))  # USD per tonne
    price_date: Mapped[datetime.date] = mapped_column(Date)
    source: Mapped[Optional[str]] = mapped_column(String(255))


class PortDistance(Base):
    __tablename__ = "port_distances"
    __table_args__ = (UniqueConstraint("origin_code", "destination_code"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    origin_code: Mapped[str] = mapped_column(String(12))
    destination_code: Mapped[str] = mapped_column(String(12))
    distance_km: Mapped[Decimal] = mapped_column(Numeric(10, 1))


class CalculationHistory(Base):
    """Audit trail of every estimate; also the training set for seasonality."""

    __tablename__ = "calculation_history"

    id: Mapped[int] = mapped_column(primary_key=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime)
    origin: Mapped[str] = mapped_column(String(12))
    destination: Mapped[str] = mapped_column(String(12))
    origin_region: Mapped[Optional[str]] = mapped_column(String(48))
    destination_region: Mapped[Optional[str]] = mapped_column(String(48))
    container_type: Mapped[str] = mapped_column(String(10))
    weight: Mapped[Optional[int]] = mapped_column(Integer)
    rate: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    final_rate: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    min_rate: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    max_rate: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    reliability: Mapped[Decimal] = mapped_column(Numeric(4, 2))
    source_count: Mapped[int] = mapped_column(Integer)
    sources_used: Mapped[Optional[list]] = mapped_column(JSON)
    user_email: Mapped[Optional[str]] = mapped_column(String(255))
