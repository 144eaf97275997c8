"""Effective-dated record management with automatic overlap closing."""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any, Generic, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_compute.errors import BusinessRuleViolation
from payroll_compute.models.base import EffectiveDatedMixin

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=EffectiveDatedMixin)


class DuplicateActiveRecordError(BusinessRuleViolation):
    """Raised when more than one record of a stream covers the same date."""

    code = "DUPLICATE_ACTIVE_RECORD"

    def __init__(self, record_type: str, subject_id: UUID, kind: str | None, as_of_date: date, count: int):
        self.record_type = record_type
        self.subject_id = subject_id
        self.kind = kind
        self.as_of_date = as_of_date
        self.count = count
        stream = f"{record_type}[{kind}]" if kind else record_type
        super().__init__(
            f"{count} active {stream} records for {subject_id} on {as_of_date}; expected at most one"
        )


class EffectiveDatedManager(Generic[RecordT]):
    """Keeps at most one record per (subject, type) active on any date.

    A stream is the set of records sharing a subject and, when the model
    declares a type discriminator, a type. Creating a record effective from
    D closes every record of the stream still open on D at D - 1 day.
    Records are never deleted; terminate() ends a stream without a
    successor.
    """

    def __init__(self, session: AsyncSession, model: type[RecordT]):
        self.session = session
        self.model = model

    @property
    def record_type(self) -> str:
        return self.model.__name__

    def _stream_criteria(self, subject_id: UUID, kind: str | None) -> list[Any]:
        model = self.model
        criteria = [getattr(model, model.__subject_attr__) == subject_id]
        if model.__kind_attr__ is not None:
            if kind is None:
                raise ValueError(f"{self.record_type} records require a type")
            criteria.append(getattr(model, model.__kind_attr__) == kind)
        return criteria

    @staticmethod
    def _active_criteria(model: type[EffectiveDatedMixin], as_of_date: date) -> list[Any]:
        return [
            model.effective_from <= as_of_date,
            (model.effective_to.is_(None) | (model.effective_to >= as_of_date)),
        ]

    async def find_active(
        self,
        subject_id: UUID,
        as_of_date: date,
        kind: str | None = None,
    ) -> RecordT | None:
        """Return the record of the stream covering as_of_date, if any.

        Raises:
            DuplicateActiveRecordError: If more than one record covers the date
        """
        result = await self.session.execute(
            select(self.model).where(
                *self._stream_criteria(subject_id, kind),
                *self._active_criteria(self.model, as_of_date),
            )
        )
        records = list(result.scalars().all())
        if len(records) > 1:
            raise DuplicateActiveRecordError(self.record_type, subject_id, kind, as_of_date, len(records))
        return records[0] if records else None

    async def find_all_active(self, subject_id: UUID, as_of_date: date) -> list[RecordT]:
        """Active records of every type for a subject, ordered by type."""
        model = self.model
        stmt = select(model).where(
            getattr(model, model.__subject_attr__) == subject_id,
            *self._active_criteria(model, as_of_date),
        )
        if model.__kind_attr__ is not None:
            stmt = stmt.order_by(getattr(model, model.__kind_attr__), model.effective_from)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def history(self, subject_id: UUID, kind: str | None = None) -> list[RecordT]:
        """All records of a stream, oldest first."""
        result = await self.session.execute(
            select(self.model)
            .where(*self._stream_criteria(subject_id, kind))
            .order_by(self.model.effective_from)
        )
        return list(result.scalars().all())

    async def create_with_closure(
        self,
        subject_id: UUID,
        effective_from: date,
        kind: str | None = None,
        effective_to: date | None = None,
        **fields: Any,
    ) -> RecordT:
        """Insert a record effective from effective_from, closing its predecessors.

        Raises:
            BusinessRuleViolation: If the range is inverted, or a record of the
                stream already starts on or after effective_from
        """
        if effective_to is not None and effective_to < effective_from:
            raise BusinessRuleViolation(
                f"effective_to {effective_to} is before effective_from {effective_from}"
            )

        model = self.model
        stream = await self.history(subject_id, kind)

        later = [r for r in stream if r.effective_from >= effective_from]
        if later:
            raise BusinessRuleViolation(
                f"{self.record_type} for {subject_id} already starts on "
                f"{later[0].effective_from}; a new record must start after it"
            )

        closing_date = effective_from - timedelta(days=1)
        for record in stream:
            if record.is_active_on(effective_from):
                record.effective_to = closing_date
                logger.debug(
                    "Closed %s %s at %s",
                    self.record_type,
                    subject_id,
                    closing_date,
                )
        # Closures must reach the database before the successor is inserted.
        await self.session.flush()

        values = dict(fields)
        values[model.__subject_attr__] = subject_id
        if model.__kind_attr__ is not None:
            values[model.__kind_attr__] = kind
        record = model(effective_from=effective_from, effective_to=effective_to, **values)
        self.session.add(record)
        await self.session.flush()
        return record

    async def terminate(self, record: RecordT, end_date: date) -> RecordT:
        """End a record on end_date without creating a successor."""
        if end_date < record.effective_from:
            raise BusinessRuleViolation(
                f"Cannot end {self.record_type} on {end_date}, before it starts on {record.effective_from}"
            )
        if record.effective_to is not None and record.effective_to < end_date:
            raise BusinessRuleViolation(
                f"{self.record_type} already ended on {record.effective_to}"
            )
        record.effective_to = end_date
        await self.session.flush()
        return record
