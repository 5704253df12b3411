"""Storage capability used by the pipelines, plus an in-memory implementation.

Pipelines depend only on the ``QuoteStore`` protocol; ``MemoryQuoteStore``
backs tests and demos, ``pricebook.sql_store.SqlQuoteStore`` backs production.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from enum import Enum
from typing import AsyncIterator, Protocol

from .domain import Product, Quote, RawMessage, Supplier
from .errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


class MessageFilter(str, Enum):
    """Backlog views."""
    ALL = "all"
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"

    def accepts(self, message: RawMessage) -> bool:
        if self is MessageFilter.PENDING:
            return not message.processed
        if self is MessageFilter.PROCESSED:
            return message.processed and message.processing_error is None
        if self is MessageFilter.FAILED:
            return message.failed
        return True


class QuoteStore(Protocol):
    """Persistence boundary for messages, entities and quotes.

    All reads and writes are tenant-scoped. ``create_*`` raise ``ConflictError``
    when ``(tenant_id, normalized_name)`` is already taken; ``commit_outcome``
    raises ``ConflictError`` when the message is no longer unprocessed.
    """

    async def add_message(self, message: RawMessage) -> None: ...

    async def get_message(self, tenant_id: str, message_id: str) -> RawMessage | None: ...

    def iter_messages(
        self,
        tenant_id: str,
        *,
        newest_first: bool = True,
        status: MessageFilter = MessageFilter.ALL,
    ) -> AsyncIterator[RawMessage]: ...

    async def count_unprocessed(self, tenant_id: str) -> int: ...

    async def find_product(self, tenant_id: str, normalized_name: str) -> Product | None: ...

    async def create_product(self, product: Product, normalized_name: str) -> None: ...

    async def get_product(self, tenant_id: str, product_id: str) -> Product | None: ...

    async def list_products(self, tenant_id: str) -> list[Product]: ...

    async def find_supplier(self, tenant_id: str, normalized_name: str) -> Supplier | None: ...

    async def create_supplier(self, supplier: Supplier, normalized_name: str) -> None: ...

    async def get_supplier(self, tenant_id: str, supplier_id: str) -> Supplier | None: ...

    async def list_suppliers(self, tenant_id: str) -> list[Supplier]: ...

    async def list_quotes(self, tenant_id: str, product_id: str | None = None) -> list[Quote]: ...

    async def commit_outcome(
        self,
        tenant_id: str,
        message_id: str,
        *,
        quote: Quote | None = None,
        error: str | None = None,
    ) -> None: ...

    async def reset_failed(self, tenant_id: str, error: str | None = None) -> int: ...


class MemoryQuoteStore:
    """Process-local store.

    Every method body runs without awaiting, so each check-then-write is
    atomic with respect to other coroutines on the same loop.
    """

    def __init__(self) -> None:
        self._messages: dict[str, RawMessage] = {}
        self._products: dict[str, Product] = {}
        self._suppliers: dict[str, Supplier] = {}
        self._quotes: list[Quote] = []
        # (tenant_id, normalized_name) -> entity id
        self._product_names: dict[tuple[str, str], str] = {}
        self._supplier_names: dict[tuple[str, str], str] = {}

    # Messages

    async def add_message(self, message: RawMessage) -> None:
        if message.id in self._messages:
            raise ConflictError(f"message {message.id} already recorded")
        self._messages[message.id] = replace(message)

    async def get_message(self, tenant_id: str, message_id: str) -> RawMessage | None:
        message = self._messages.get(message_id)
        if message is None or message.tenant_id != tenant_id:
            return None
        return replace(message)

    async def iter_messages(
        self,
        tenant_id: str,
        *,
        newest_first: bool = True,
        status: MessageFilter = MessageFilter.ALL,
    ) -> AsyncIterator[RawMessage]:
        # Dicts keep insertion order; the sort is stable for equal timestamps
        ordered = sorted(
            (m for m in self._messages.values() if m.tenant_id == tenant_id),
            key=lambda m: m.received_at,
            reverse=newest_first,
        )
        for message in ordered:
            if status.accepts(message):
                yield replace(message)

    async def count_unprocessed(self, tenant_id: str) -> int:
        return sum(
            1 for m in self._messages.values()
            if m.tenant_id == tenant_id and not m.processed
        )

    async def commit_outcome(
        self,
        tenant_id: str,
        message_id: str,
        *,
        quote: Quote | None = None,
        error: str | None = None,
    ) -> None:
        message = self._messages.get(message_id)
        if message is None or message.tenant_id != tenant_id:
            raise NotFoundError(f"message {message_id} not found for tenant {tenant_id}")
        if message.processed:
            raise ConflictError(f"message {message_id} already processed")
        if quote is not None:
            self._check_quote_refs(quote, message)
            self._quotes.append(quote)
        message.processed = True
        message.processing_error = error

    async def reset_failed(self, tenant_id: str, error: str | None = None) -> int:
        reopened = 0
        for message in self._messages.values():
            if message.tenant_id != tenant_id or not message.failed:
                continue
            if error is not None and message.processing_error != error:
                continue
            message.processed = False
            message.processing_error = None
            reopened += 1
        return reopened

    # Entities

    async def find_product(self, tenant_id: str, normalized_name: str) -> Product | None:
        product_id = self._product_names.get((tenant_id, normalized_name))
        return self._products[product_id] if product_id else None

    async def create_product(self, product: Product, normalized_name: str) -> None:
        key = (product.tenant_id, normalized_name)
        if key in self._product_names:
            raise ConflictError(f"product {normalized_name!r} already exists")
        self._product_names[key] = product.id
        self._products[product.id] = product

    async def get_product(self, tenant_id: str, product_id: str) -> Product | None:
        product = self._products.get(product_id)
        return product if product is not None and product.tenant_id == tenant_id else None

    async def list_products(self, tenant_id: str) -> list[Product]:
        return [p for p in self._products.values() if p.tenant_id == tenant_id]

    async def find_supplier(self, tenant_id: str, normalized_name: str) -> Supplier | None:
        supplier_id = self._supplier_names.get((tenant_id, normalized_name))
        return self._suppliers[supplier_id] if supplier_id else None

    async def create_supplier(self, supplier: Supplier, normalized_name: str) -> None:
        key = (supplier.tenant_id, normalized_name)
        if key in self._supplier_names:
            raise ConflictError(f"supplier {normalized_name!r} already exists")
        self._supplier_names[key] = supplier.id
        self._suppliers[supplier.id] = supplier

    async def get_supplier(self, tenant_id: str, supplier_id: str) -> Supplier | None:
        supplier = self._suppliers.get(supplier_id)
        return supplier if supplier is not None and supplier.tenant_id == tenant_id else None

    async def list_suppliers(self, tenant_id: str) -> list[Supplier]:
        return [s for s in self._suppliers.values() if s.tenant_id == tenant_id]

    # Quotes

    async def list_quotes(self, tenant_id: str, product_id: str | None = None) -> list[Quote]:
        return [
            q for q in self._quotes
            if q.tenant_id == tenant_id and (product_id is None or q.product_id == product_id)
        ]

    def _check_quote_refs(self, quote: Quote, message: RawMessage) -> None:
        product = self._products.get(quote.product_id)
        supplier = self._suppliers.get(quote.supplier_id)
        if product is None or product.tenant_id != quote.tenant_id:
            raise NotFoundError(f"product {quote.product_id} not found for tenant {quote.tenant_id}")
        if supplier is None or supplier.tenant_id != quote.tenant_id:
            raise NotFoundError(f"supplier {quote.supplier_id} not found for tenant {quote.tenant_id}")
        if quote.source_message_id != message.id or message.tenant_id != quote.tenant_id:
            raise NotFoundError(f"quote {quote.id} does not reference message {message.id}")
