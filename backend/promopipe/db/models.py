"""SQLAlchemy 2.0 ORM models for queued jobs and finished pipeline runs."""

from typing import Any, Optional

from sqlalchemy import JSON, Float, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class JobRecord(Base):
    """One queued job. Column names mirror ``promopipe.queue.models.Job``."""
    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    queue: Mapped[str] = mapped_column(String(100), index=True)
    name: Mapped[str] = mapped_column(String(200))
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    seq: Mapped[int] = mapped_column(Integer, index=True)
    state: Mapped[str] = mapped_column(String(20), index=True)
    available_at: Mapped[float] = mapped_column(Float, default=0.0)
    attempts_made: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    backoff: Mapped[dict] = mapped_column(JSON)
    single_retries: Mapped[list] = mapped_column(JSON, default=list)
    stall_count: Mapped[int] = mapped_column(Integer, default=0)
    progress: Mapped[float] = mapped_column(Float, default=0.0)
    last_heartbeat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    result: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[float] = mapped_column(Float)
    started_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    finished_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    __table_args__ = (
        Index("ix_jobs_dispatch", "queue", "state", "available_at"),
    )


class PipelineRunRecord(Base):
    """Persisted record of a run, written when it reaches a terminal stage."""
    __tablename__ = "pipeline_runs"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(128), index=True)
    stage: Mapped[str] = mapped_column(String(50))
    progress: Mapped[int] = mapped_column(Integer, default=0)
    current_step: Mapped[str] = mapped_column(Text, default="")
    platform: Mapped[str] = mapped_column(String(20))
    scenes: Mapped[list] = mapped_column(JSON, default=list)
    clip_urls: Mapped[list] = mapped_column(JSON, default=list)
    audio_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    final_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    thumbnail_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    error: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[float] = mapped_column(Float)
    updated_at: Mapped[float] = mapped_column(Float)
    completed_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
