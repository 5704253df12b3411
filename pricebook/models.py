"""Core SQLAlchemy models (2.x style) for the quote store schema.

Every row carries its tenant id; name uniqueness is enforced per tenant on
the normalized name.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .domain import NAME_MAX_LENGTH, PRICE_PRECISION, PRICE_SCALE


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class RawMessageRecord(Base):
    """Inbound supplier messages (backlog)."""
    __tablename__ = "raw_messages"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    sender: Mapped[str] = mapped_column(String(NAME_MAX_LENGTH), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    processing_error: Mapped[str | None] = mapped_column(String(255))

    __table_args__ = (
        Index("ix_raw_messages_tenant_received", "tenant_id", "received_at"),
        Index("ix_raw_messages_tenant_processed", "tenant_id", "processed"),
    )


class SupplierRecord(Base):
    """Suppliers, unique per tenant by normalized name."""
    __tablename__ = "suppliers"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(NAME_MAX_LENGTH), nullable=False)
    normalized_name: Mapped[str] = mapped_column(String(NAME_MAX_LENGTH), nullable=False)

    __table_args__ = (
        Index("ix_suppliers_tenant_name", "tenant_id", "normalized_name", unique=True),
    )


class ProductRecord(Base):
    """Products, unique per tenant by normalized name."""
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(NAME_MAX_LENGTH), nullable=False)
    normalized_name: Mapped[str] = mapped_column(String(NAME_MAX_LENGTH), nullable=False)

    quotes: Mapped[list[QuoteRecord]] = relationship("QuoteRecord", back_populates="product")

    __table_args__ = (
        Index("ix_products_tenant_name", "tenant_id", "normalized_name", unique=True),
    )


class QuoteRecord(Base):
    """Append-only quotes."""
    __tablename__ = "quotes"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(ForeignKey("products.id"), nullable=False, index=True)
    supplier_id: Mapped[str] = mapped_column(ForeignKey("suppliers.id"), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(PRICE_PRECISION, PRICE_SCALE), nullable=False)
    conditions: Mapped[str | None] = mapped_column(Text)
    extracted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    source_message_id: Mapped[str] = mapped_column(
        ForeignKey("raw_messages.id"),
        nullable=False,
        unique=True,
    )

    product: Mapped[ProductRecord] = relationship("ProductRecord", back_populates="quotes")

    __table_args__ = (
        Index("ix_quotes_product_price", "product_id", "price", "extracted_at"),
    )


class ChannelSessionRecord(Base):
    """Messaging sessions mirrored from the provider (status is read-only here)."""
    __tablename__ = "channel_sessions"

    session_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
