"""ORM tables for the persisted location memory."""

from __future__ import annotations

from typing import List, Optional

from sqlalchemy import Float, ForeignKey, Index, Integer, String, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker


class Base(DeclarativeBase):
    pass


class LocationRecord(Base):
    __tablename__ = "locations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    fingerprint: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    visit_count: Mapped[int] = mapped_column(Integer, default=1)
    last_visit: Mapped[float] = mapped_column(Float, index=True)
    avg_scan_time: Mapped[float] = mapped_column(Float, default=0.0)
    confidence: Mapped[float] = mapped_column(Float, default=0.5)
    created_at: Mapped[float] = mapped_column(Float)
    updated_at: Mapped[float] = mapped_column(Float)

    obstacles: Mapped[List["ObstacleRecord"]] = relationship(
        back_populates="location",
        cascade="all, delete-orphan",
        order_by="ObstacleRecord.id",
    )
    patterns: Mapped[List["PatternRecord"]] = relationship(
        back_populates="location",
        cascade="all, delete-orphan",
        order_by="PatternRecord.id",
    )
    paths: Mapped[List["PathRecord"]] = relationship(
        back_populates="location",
        cascade="all, delete-orphan",
        order_by="PathRecord.id",
    )


class ObstacleRecord(Base):
    __tablename__ = "obstacles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    location_id: Mapped[int] = mapped_column(ForeignKey("locations.id", ondelete="CASCADE"), index=True)
    x: Mapped[float] = mapped_column(Float)
    y: Mapped[float] = mapped_column(Float)
    z: Mapped[float] = mapped_column(Float)
    width: Mapped[float] = mapped_column(Float)
    height: Mapped[float] = mapped_column(Float)
    depth: Mapped[float] = mapped_column(Float)
    type: Mapped[str] = mapped_column(String(32), default="unknown")
    permanence: Mapped[float] = mapped_column(Float, default=0.5)
    last_seen: Mapped[float] = mapped_column(Float)

    location: Mapped[LocationRecord] = relationship(back_populates="obstacles")


class PatternRecord(Base):
    __tablename__ = "patterns"
    __table_args__ = (Index("idx_pattern_time", "day_of_week", "hour_of_day"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    location_id: Mapped[int] = mapped_column(ForeignKey("locations.id", ondelete="CASCADE"), index=True)
    day_of_week: Mapped[int] = mapped_column(Integer)
    hour_of_day: Mapped[int] = mapped_column(Integer)
    change_type: Mapped[str] = mapped_column(String(16))
    area_x: Mapped[float] = mapped_column(Float)
    area_y: Mapped[float] = mapped_column(Float)
    area_z: Mapped[float] = mapped_column(Float)
    radius: Mapped[float] = mapped_column(Float)
    confidence: Mapped[float] = mapped_column(Float, default=0.5)

    location: Mapped[LocationRecord] = relationship(back_populates="patterns")


class PathRecord(Base):
    __tablename__ = "paths"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    location_id: Mapped[int] = mapped_column(ForeignKey("locations.id", ondelete="CASCADE"), index=True)
    waypoints: Mapped[str] = mapped_column(Text)  # JSON list of [x, y, z]
    usage_count: Mapped[int] = mapped_column(Integer, default=1)
    avg_traversal_time: Mapped[float] = mapped_column(Float, default=0.0)
    success_rate: Mapped[float] = mapped_column(Float, default=1.0)

    location: Mapped[LocationRecord] = relationship(back_populates="paths")


def _enable_sqlite_foreign_keys(dbapi_connection, _record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_memory_engine(database_url: str) -> Engine:
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    engine = create_engine(database_url, connect_args=connect_args)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    Base.metadata.create_all(engine)
    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)
