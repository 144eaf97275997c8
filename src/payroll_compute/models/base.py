"""Base model class for SQLAlchemy ORM."""

from __future__ import annotations

from datetime import date, datetime
from typing import ClassVar
from uuid import UUID

from sqlalchemy import Date, DateTime, Uuid, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    type_annotation_map = {
        UUID: Uuid(as_uuid=True),
        datetime: DateTime(timezone=True),
    }


class TimestampMixin:
    """Mixin for models with created_at timestamp."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class EffectiveDatedMixin:
    """Columns and helpers shared by effective-dated records.

    A record is valid over [effective_from, effective_to]; a null
    effective_to means open-ended. ``__subject_attr__`` names the owning
    subject column and ``__kind_attr__`` the type discriminator that
    partitions a subject's records into independent streams (None means a
    single stream per subject).
    """

    __subject_attr__: ClassVar[str] = "employee_id"
    __kind_attr__: ClassVar[str | None] = None

    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date, nullable=True)

    def is_active_on(self, as_of_date: date) -> bool:
        """Check if record is active on a given date."""
        if self.effective_from > as_of_date:
            return False
        if self.effective_to is not None and self.effective_to < as_of_date:
            return False
        return True

    @property
    def subject_id(self) -> UUID:
        return getattr(self, self.__subject_attr__)

    @property
    def kind(self) -> str | None:
        if self.__kind_attr__ is None:
            return None
        return getattr(self, self.__kind_attr__)
