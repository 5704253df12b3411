"""SQLAlchemy implementation of the ``QuoteStore`` capability.

Each operation opens its own short-lived session so concurrent pipeline
workers never share one. Uniqueness of ``(tenant_id, normalized_name)`` is
left to the database's unique index; the processed-flag guard is a
conditional UPDATE inside the same transaction that inserts the quote.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import AsyncIterator

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import models
from .domain import Product, Quote, RawMessage, Supplier
from .errors import ConflictError, NotFoundError
from .sessions import ChannelSession, ConnectionStatus
from .store import MessageFilter

logger = logging.getLogger(__name__)


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _to_message(record: models.RawMessageRecord) -> RawMessage:
    return RawMessage(
        id=record.id,
        tenant_id=record.tenant_id,
        sender=record.sender,
        content=record.content,
        received_at=_aware(record.received_at),
        processed=record.processed,
        processing_error=record.processing_error,
    )


def _to_quote(record: models.QuoteRecord) -> Quote:
    return Quote(
        id=record.id,
        tenant_id=record.tenant_id,
        product_id=record.product_id,
        supplier_id=record.supplier_id,
        price=record.price,
        extracted_at=_aware(record.extracted_at),
        source_message_id=record.source_message_id,
        conditions=record.conditions,
    )


def _status_clause(status: MessageFilter):
    m = models.RawMessageRecord
    if status is MessageFilter.PENDING:
        return m.processed == False  # noqa: E712
    if status is MessageFilter.PROCESSED:
        return (m.processed == True) & m.processing_error.is_(None)  # noqa: E712
    if status is MessageFilter.FAILED:
        return (m.processed == True) & m.processing_error.is_not(None)  # noqa: E712
    return None


class SqlQuoteStore:
    """Relational ``QuoteStore`` over an async session factory."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    # Messages

    async def add_message(self, message: RawMessage) -> None:
        async with self._sessionmaker() as session:
            session.add(models.RawMessageRecord(
                id=message.id,
                tenant_id=message.tenant_id,
                sender=message.sender,
                content=message.content,
                received_at=message.received_at,
                processed=message.processed,
                processing_error=message.processing_error,
            ))
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ConflictError(f"message {message.id} already recorded") from e

    async def get_message(self, tenant_id: str, message_id: str) -> RawMessage | None:
        async with self._sessionmaker() as session:
            record = await session.scalar(
                select(models.RawMessageRecord).where(
                    models.RawMessageRecord.id == message_id,
                    models.RawMessageRecord.tenant_id == tenant_id,
                )
            )
            return _to_message(record) if record is not None else None

    async def iter_messages(
        self,
        tenant_id: str,
        *,
        newest_first: bool = True,
        status: MessageFilter = MessageFilter.ALL,
    ) -> AsyncIterator[RawMessage]:
        m = models.RawMessageRecord
        order = m.received_at.desc() if newest_first else m.received_at.asc()
        query = select(m).where(m.tenant_id == tenant_id).order_by(order, m.id)
        clause = _status_clause(status)
        if clause is not None:
            query = query.where(clause)

        async with self._sessionmaker() as session:
            result = await session.stream_scalars(query.execution_options(yield_per=100))
            async for record in result:
                yield _to_message(record)

    async def count_unprocessed(self, tenant_id: str) -> int:
        m = models.RawMessageRecord
        async with self._sessionmaker() as session:
            count = await session.scalar(
                select(func.count()).select_from(m).where(
                    m.tenant_id == tenant_id,
                    m.processed == False,  # noqa: E712
                )
            )
            return int(count or 0)

    async def commit_outcome(
        self,
        tenant_id: str,
        message_id: str,
        *,
        quote: Quote | None = None,
        error: str | None = None,
    ) -> None:
        m = models.RawMessageRecord
        async with self._sessionmaker() as session:
            async with session.begin():
                result = await session.execute(
                    update(m)
                    .where(
                        m.id == message_id,
                        m.tenant_id == tenant_id,
                        m.processed == False,  # noqa: E712
                    )
                    .values(processed=True, processing_error=error)
                )
                if result.rowcount == 0:
                    exists = await session.scalar(
                        select(m.id).where(m.id == message_id, m.tenant_id == tenant_id)
                    )
                    if exists is None:
                        raise NotFoundError(f"message {message_id} not found for tenant {tenant_id}")
                    raise ConflictError(f"message {message_id} already processed")

                if quote is not None:
                    await self._check_quote_refs(session, quote, message_id)
                    session.add(models.QuoteRecord(
                        id=quote.id,
                        tenant_id=quote.tenant_id,
                        product_id=quote.product_id,
                        supplier_id=quote.supplier_id,
                        price=quote.price,
                        conditions=quote.conditions,
                        extracted_at=quote.extracted_at,
                        source_message_id=quote.source_message_id,
                    ))

    async def reset_failed(self, tenant_id: str, error: str | None = None) -> int:
        m = models.RawMessageRecord
        query = update(m).where(
            m.tenant_id == tenant_id,
            m.processed == True,  # noqa: E712
            m.processing_error.is_not(None),
        )
        if error is not None:
            query = query.where(m.processing_error == error)

        async with self._sessionmaker() as session:
            async with session.begin():
                result = await session.execute(query.values(processed=False, processing_error=None))
                return result.rowcount

    # Entities

    async def find_product(self, tenant_id: str, normalized_name: str) -> Product | None:
        p = models.ProductRecord
        async with self._sessionmaker() as session:
            record = await session.scalar(
                select(p).where(p.tenant_id == tenant_id, p.normalized_name == normalized_name)
            )
            return Product(id=record.id, tenant_id=record.tenant_id, name=record.name) if record else None

    async def create_product(self, product: Product, normalized_name: str) -> None:
        await self._insert_entity(
            models.ProductRecord(
                id=product.id,
                tenant_id=product.tenant_id,
                name=product.name,
                normalized_name=normalized_name,
            ),
            f"product {normalized_name!r} already exists",
        )

    async def get_product(self, tenant_id: str, product_id: str) -> Product | None:
        async with self._sessionmaker() as session:
            record = await session.get(models.ProductRecord, product_id)
            if record is None or record.tenant_id != tenant_id:
                return None
            return Product(id=record.id, tenant_id=record.tenant_id, name=record.name)

    async def list_products(self, tenant_id: str) -> list[Product]:
        p = models.ProductRecord
        async with self._sessionmaker() as session:
            records = await session.scalars(select(p).where(p.tenant_id == tenant_id).order_by(p.name))
            return [Product(id=r.id, tenant_id=r.tenant_id, name=r.name) for r in records]

    async def find_supplier(self, tenant_id: str, normalized_name: str) -> Supplier | None:
        s = models.SupplierRecord
        async with self._sessionmaker() as session:
            record = await session.scalar(
                select(s).where(s.tenant_id == tenant_id, s.normalized_name == normalized_name)
            )
            return Supplier(id=record.id, tenant_id=record.tenant_id, name=record.name) if record else None

    async def create_supplier(self, supplier: Supplier, normalized_name: str) -> None:
        await self._insert_entity(
            models.SupplierRecord(
                id=supplier.id,
                tenant_id=supplier.tenant_id,
                name=supplier.name,
                normalized_name=normalized_name,
            ),
            f"supplier {normalized_name!r} already exists",
        )

    async def get_supplier(self, tenant_id: str, supplier_id: str) -> Supplier | None:
        async with self._sessionmaker() as session:
            record = await session.get(models.SupplierRecord, supplier_id)
            if record is None or record.tenant_id != tenant_id:
                return None
            return Supplier(id=record.id, tenant_id=record.tenant_id, name=record.name)

    async def list_suppliers(self, tenant_id: str) -> list[Supplier]:
        s = models.SupplierRecord
        async with self._sessionmaker() as session:
            records = await session.scalars(select(s).where(s.tenant_id == tenant_id).order_by(s.name))
            return [Supplier(id=r.id, tenant_id=r.tenant_id, name=r.name) for r in records]

    # Quotes

    async def list_quotes(self, tenant_id: str, product_id: str | None = None) -> list[Quote]:
        q = models.QuoteRecord
        query = select(q).where(q.tenant_id == tenant_id)
        if product_id is not None:
            query = query.where(q.product_id == product_id)
        async with self._sessionmaker() as session:
            records = await session.scalars(query.order_by(q.extracted_at, q.id))
            return [_to_quote(r) for r in records]

    async def _insert_entity(self, record: models.Base, conflict_message: str) -> None:
        async with self._sessionmaker() as session:
            session.add(record)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ConflictError(conflict_message) from e

    async def _check_quote_refs(self, session: AsyncSession, quote: Quote, message_id: str) -> None:
        product = await session.get(models.ProductRecord, quote.product_id)
        supplier = await session.get(models.SupplierRecord, quote.supplier_id)
        if product is None or product.tenant_id != quote.tenant_id:
            raise NotFoundError(f"product {quote.product_id} not found for tenant {quote.tenant_id}")
        if supplier is None or supplier.tenant_id != quote.tenant_id:
            raise NotFoundError(f"supplier {quote.supplier_id} not found for tenant {quote.tenant_id}")
        if quote.source_message_id != message_id:
            raise NotFoundError(f"quote {quote.id} does not reference message {message_id}")


class SqlSessionDirectory:
    """``SessionDirectory`` over the ``channel_sessions`` table."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def lookup(self, session_key: str) -> ChannelSession | None:
        async with self._sessionmaker() as session:
            record = await session.get(models.ChannelSessionRecord, session_key)
            if record is None:
                return None
            return ChannelSession(
                session_key=record.session_key,
                tenant_id=record.tenant_id,
                status=ConnectionStatus(record.status),
            )

    async def save(self, channel: ChannelSession) -> None:
        async with self._sessionmaker() as session:
            await session.merge(models.ChannelSessionRecord(
                session_key=channel.session_key,
                tenant_id=channel.tenant_id,
                status=channel.status.value,
            ))
            await session.commit()
