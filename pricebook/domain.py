"""Domain records passed between the pipelines and the storage layer.

Plain dataclasses; ``pricebook.models`` holds the SQLAlchemy tables that
persist them.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

# Storage limits shared by the tables and the pipeline checks
NAME_MAX_LENGTH = 255
PRICE_PRECISION = 14
PRICE_SCALE = 4


def new_id() -> str:
    """Fresh unique identifier for any stored record."""
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RawMessage:
    """Inbound supplier message as received (webhook or manual entry).

    Only ``processed`` and ``processing_error`` ever change after creation.
    """
    id: str
    tenant_id: str
    sender: str
    content: str
    received_at: datetime
    processed: bool = False
    processing_error: str | None = None

    @property
    def failed(self) -> bool:
        return self.processed and self.processing_error is not None


@dataclass(frozen=True)
class Supplier:
    id: str
    tenant_id: str
    name: str


@dataclass(frozen=True)
class Product:
    id: str
    tenant_id: str
    name: str


@dataclass(frozen=True)
class Quote:
    """Append-only price assertion derived from one source message."""
    id: str
    tenant_id: str
    product_id: str
    supplier_id: str
    price: Decimal
    extracted_at: datetime
    source_message_id: str
    conditions: str | None = None


@dataclass(frozen=True)
class ExtractedFact:
    """Adapter output; never persisted."""
    product_name: str
    price: Decimal
    supplier_name: str | None = None
    conditions: str | None = None


@dataclass(frozen=True)
class BestPrice:
    price: Decimal
    supplier_name: str
    quote_id: str


@dataclass(frozen=True)
class AggregatedProduct:
    """Product plus its derived best offer; recomputed on every read."""
    product: Product
    best_price: Decimal | None = None
    best_supplier_name: str | None = None


@dataclass
class ProductDetails:
    """Single-product view: best offer plus full quote history, newest first."""
    aggregated: AggregatedProduct
    quotes: list[Quote] = field(default_factory=list)
