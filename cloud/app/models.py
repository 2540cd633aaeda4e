from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class SubmissionStatus:
    PENDING = "pending"
    ASSIGNED = "assigned"
    BROWSER_COMPLETE = "browser-complete"
    COMPLETE = "complete"
    FAILED = "failed"


class TestSetup(Base):
    __tablename__ = "test_setups"
    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=new_id)
    manifest: Mapped[dict] = mapped_column(sa.JSON, nullable=False)
    bundle_path: Mapped[str] = mapped_column(sa.Text, nullable=False)
    notebook_path: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), default=now_utc, nullable=False)


class Submission(Base):
    __tablename__ = "submissions"
    __table_args__ = (
        sa.Index("ix_submissions_status_submitted_at", "status", "submitted_at"),
        sa.Index("ix_submissions_setup_user", "test_setup_id", "user_id"),
    )
    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=new_id)
    test_setup_id: Mapped[str] = mapped_column(
        sa.String(36), sa.ForeignKey("test_setups.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(sa.String(32), nullable=False, default=SubmissionStatus.PENDING)
    worker_id: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    artifact_path: Mapped[str] = mapped_column(sa.Text, nullable=False)
    filename: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    attempt_number: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=1)
    # Set on the worker re-run of a browser-graded submission.
    preview_of_id: Mapped[Optional[str]] = mapped_column(
        sa.String(36), sa.ForeignKey("submissions.id", ondelete="SET NULL"), nullable=True
    )
    submitted_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), default=now_utc, nullable=False)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)


class Result(Base):
    __tablename__ = "results"
    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=new_id)
    # No FK: results for unknown submissions are still kept.
    submission_id: Mapped[str] = mapped_column(sa.String(36), nullable=False, index=True)
    source: Mapped[str] = mapped_column(sa.String(16), nullable=False, default="worker")
    collection_json: Mapped[str] = mapped_column(sa.Text, nullable=False)
    received_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), default=now_utc, nullable=False)
