from __future__ import annotations

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class RunRow(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True)
    workflow_name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    workflow: Mapped[dict] = mapped_column(sa.JSON, nullable=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    cancel_requested: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    inputs: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    error: Mapped[Optional[str]] = mapped_column(sa.Text)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, index=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))


class JobRow(Base):
    __tablename__ = "jobs"
    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True)
    run_id: Mapped[str] = mapped_column(sa.String(36), sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    needs: Mapped[list] = mapped_column(sa.JSON, nullable=False, default=list)
    runner_id: Mapped[Optional[str]] = mapped_column(sa.Text)
    lease_id: Mapped[Optional[str]] = mapped_column(sa.String(36))
    cancel_requested: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    error: Mapped[Optional[str]] = mapped_column(sa.Text)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))


class StepRow(Base):
    __tablename__ = "steps"
    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True)
    run_id: Mapped[str] = mapped_column(sa.String(36), sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    job_id: Mapped[str] = mapped_column(sa.String(36), sa.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    command: Mapped[str] = mapped_column(sa.Text, nullable=False)
    continue_on_error: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    exit_code: Mapped[Optional[int]] = mapped_column(sa.Integer)
    output: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    error: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    started_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))


class RunnerRow(Base):
    __tablename__ = "runners"
    id: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    tags: Mapped[list] = mapped_column(sa.JSON, nullable=False, default=list)
    version: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    last_heartbeat: Mapped[float] = mapped_column(sa.Float, nullable=False)
    job_id: Mapped[Optional[str]] = mapped_column(sa.String(36))
    registered_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)


class LogRow(Base):
    __tablename__ = "logs"
    __table_args__ = (sa.UniqueConstraint("run_id", "seq"),)
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.String(36), sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False, index=True)
    step_id: Mapped[str] = mapped_column(sa.String(36), nullable=False)
    seq: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    level: Mapped[str] = mapped_column(sa.String(8), nullable=False)
    content: Mapped[str] = mapped_column(sa.Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
