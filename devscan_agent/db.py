"""SQLAlchemy schema for sessions, scanned links and the durable verdict cache.

Relationships:
    ScanSession --1:N--> ScannedLink --1:N--> CachedResult
    DeletedCachedLink (standalone archive of swept cache rows)
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Engine, ForeignKey, Index, Integer, String, Text, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from .models import utcnow


class Base(DeclarativeBase):
    pass


class ScanSession(Base):
    __tablename__ = "scan_sessions"

    session_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    browser_info: Mapped[str | None] = mapped_column(String(255))
    engine_version: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class ScannedLink(Base):
    __tablename__ = "scanned_links"

    link_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("scan_sessions.session_id", ondelete="CASCADE"), index=True
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)
    page_url: Mapped[str | None] = mapped_column(Text)
    scanned_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class CachedResult(Base):
    __tablename__ = "cached_results"
    __table_args__ = (
        Index("ix_cached_results_url", "url", mysql_length=255),
        Index("ix_cached_results_expires_at", "expires_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Legacy rows are keyed by link only and carry no URL.
    link_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("scanned_links.link_id", ondelete="SET NULL"))
    url: Mapped[str | None] = mapped_column(String(2048))
    final_verdict: Mapped[str] = mapped_column(String(32), nullable=False)
    confidence_score: Mapped[str | None] = mapped_column(String(16))
    anomaly_risk_level: Mapped[str | None] = mapped_column(String(16))
    explanation: Mapped[str | None] = mapped_column(Text)
    tip: Mapped[str | None] = mapped_column(Text)
    cache_source: Mapped[str] = mapped_column(String(32), default="ml_service")
    last_scanned: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime)


class DeletedCachedLink(Base):
    __tablename__ = "deleted_cached_links"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    url: Mapped[str | None] = mapped_column(String(2048))
    final_verdict: Mapped[str] = mapped_column(String(32), nullable=False)
    confidence_score: Mapped[str | None] = mapped_column(String(16))
    anomaly_risk_level: Mapped[str | None] = mapped_column(String(16))
    explanation: Mapped[str | None] = mapped_column(Text)
    tip: Mapped[str | None] = mapped_column(Text)
    cache_source: Mapped[str | None] = mapped_column(String(32))
    last_scanned: Mapped[datetime | None] = mapped_column(DateTime)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime)
    archived_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


def make_engine(url: str) -> Engine:
    kwargs: dict = {"pool_pre_ping": True}
    is_sqlite = url.startswith("sqlite")
    if is_sqlite:
        # Calls arrive from asyncio.to_thread workers.
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)
    if is_sqlite:
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def init_schema(engine: Engine) -> None:
    Base.metadata.create_all(engine)
