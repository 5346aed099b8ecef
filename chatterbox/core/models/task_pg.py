from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    DateTime,
    Enum as SQLAlchemyEnum,
    ForeignKey,
    Index,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from chatterbox.core.types.status import TaskType


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for PostgreSQL models"""

    pass


class TaskModel(Base):
    """
    A raw, dispatchable unit of queued work. Never updated after insert.

    - id: int # bigserial
    - task_type: TaskType # closed set the worker dispatches on
    - payload: dict # handler ids plus workflow state, as JSONB
    - enqueued_at: datetime # insert time
    - scheduled_at: datetime # not claimable before this instant
    """

    __tablename__ = 'chatterbox_tasks'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    task_type: Mapped[TaskType] = mapped_column(
        SQLAlchemyEnum(
            TaskType,
            native_enum=False,
            length=32,
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=False,
    )
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    enqueued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        Index('idx_chatterbox_tasks_schedule_order', 'scheduled_at', 'id'),
    )


class TaskLeaseModel(Base):
    """
    Append-only claim record. A task with a lease whose expires_at lies in
    the future is not available; expired leases stay as history.
    """

    __tablename__ = 'chatterbox_task_leases'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    task_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey('chatterbox_tasks.id', ondelete='CASCADE'),
        nullable=False,
    )
    leased_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('idx_chatterbox_task_leases_task_expiry', 'task_id', 'expires_at'),
    )


class TaskCompletionModel(Base):
    """Terminal fact for a raw task; at most one row per task."""

    __tablename__ = 'chatterbox_task_completions'

    task_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey('chatterbox_tasks.id', ondelete='CASCADE'),
        primary_key=True,
    )
    completed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class TaskErrorModel(Base):
    """Observability-only error log; never consulted by dequeue."""

    __tablename__ = 'chatterbox_task_errors'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    task_id: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        ForeignKey('chatterbox_tasks.id', ondelete='SET NULL'),
        nullable=True,
        index=True,
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

