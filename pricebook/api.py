"""FastAPI app: webhook/manual message intake, batch processing and price views.

Tenant identity arrives in the path; authenticating it is the job of the
gateway in front of this service.
"""
from __future__ import annotations

import logging
from contextlib import aclosing, asynccontextmanager
from datetime import datetime
from decimal import Decimal
from functools import lru_cache
from typing import Literal

from fastapi import BackgroundTasks, Depends, FastAPI, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ai.extraction import Extractor, build_extractor

from .config import settings
from .db import AsyncSessionMaker
from .domain import NAME_MAX_LENGTH, AggregatedProduct, Quote, RawMessage
from .errors import IngestionNotAllowed, NotFoundError, UnknownSession
from .logging_config import setup_logging
from .pipelines.aggregation import PriceAggregator
from .pipelines.ingest import MessageBacklog
from .pipelines.processing import BatchResult, QuoteIngestionPipeline
from .sessions import SessionDirectory, resolve_connected_tenant
from .sql_store import SqlQuoteStore, SqlSessionDirectory
from .store import MessageFilter, QuoteStore

logger = logging.getLogger(__name__)


# Pydantic request/response models
class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    extraction_available: bool


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    detail: str | None = None


class WebhookRequest(BaseModel):
    """Delivery from the messaging provider."""
    model_config = ConfigDict(populate_by_name=True)

    session: str = Field(min_length=1)
    sender: str = Field(alias="from", min_length=1, max_length=NAME_MAX_LENGTH)
    message: str


class ManualMessageRequest(BaseModel):
    """Message typed in by the user."""
    sender: str = Field(min_length=1, max_length=NAME_MAX_LENGTH)
    content: str = Field(min_length=1)


class MessageDTO(BaseModel):
    """Raw message data transfer object."""
    id: str
    sender: str
    content: str
    received_at: datetime
    processed: bool
    processing_error: str | None = None

    @classmethod
    def from_domain(cls, message: RawMessage) -> MessageDTO:
        return cls(
            id=message.id,
            sender=message.sender,
            content=message.content,
            received_at=message.received_at,
            processed=message.processed,
            processing_error=message.processing_error,
        )


class WebhookResponse(BaseModel):
    """Accepted delivery."""
    ok: bool
    message_id: str
    tenant_id: str


class PendingCountResponse(BaseModel):
    tenant_id: str
    pending: int


class BatchResponse(BaseModel):
    """Batch processing counts."""
    succeeded: int
    failed: int
    skipped: int

    @classmethod
    def from_result(cls, result: BatchResult) -> BatchResponse:
        return cls(succeeded=result.succeeded, failed=result.failed, skipped=result.skipped)


class ProductDTO(BaseModel):
    """Product with its current best offer."""
    id: str
    name: str
    best_price: Decimal | None = None
    best_supplier_name: str | None = None

    @classmethod
    def from_domain(cls, aggregated: AggregatedProduct) -> ProductDTO:
        return cls(
            id=aggregated.product.id,
            name=aggregated.product.name,
            best_price=aggregated.best_price,
            best_supplier_name=aggregated.best_supplier_name,
        )


class QuoteDTO(BaseModel):
    """Quote data transfer object."""
    id: str
    supplier_id: str
    supplier_name: str | None = None
    price: Decimal
    conditions: str | None = None
    extracted_at: datetime
    source_message_id: str


class ProductDetailsResponse(BaseModel):
    product: ProductDTO
    quotes: list[QuoteDTO]


class SupplierDTO(BaseModel):
    id: str
    name: str


# Dependencies
@lru_cache(maxsize=1)
def get_store() -> QuoteStore:
    return SqlQuoteStore(AsyncSessionMaker)


@lru_cache(maxsize=1)
def get_session_directory() -> SessionDirectory:
    return SqlSessionDirectory(AsyncSessionMaker)


@lru_cache(maxsize=1)
def get_extractor() -> Extractor:
    return build_extractor()


def get_pipeline(
    store: QuoteStore = Depends(get_store),
    extractor: Extractor = Depends(get_extractor),
) -> QuoteIngestionPipeline:
    return QuoteIngestionPipeline(store, extractor)


def get_backlog(store: QuoteStore = Depends(get_store)) -> MessageBacklog:
    return MessageBacklog(store)


def get_aggregator(store: QuoteStore = Depends(get_store)) -> PriceAggregator:
    return PriceAggregator(store)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    setup_logging()
    logger.info("Application starting up")

    yield

    logger.info("Application shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Supplier message intake, quote extraction and best-price views",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:3001"],  # Frontend URLs
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Exception handlers
@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    """Unknown tenant-scoped reference."""
    logger.warning(f"Not found: {exc}")
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content=ErrorResponse(error="not_found", detail=str(exc)).model_dump(),
    )


@app.exception_handler(UnknownSession)
async def unknown_session_handler(request, exc: UnknownSession):
    """Delivery for a session key that was never registered."""
    logger.warning(f"Webhook rejected: {exc}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ErrorResponse(error="session_not_found", detail=str(exc)).model_dump(),
    )


@app.exception_handler(IngestionNotAllowed)
async def ingestion_not_allowed_handler(request, exc: IngestionNotAllowed):
    """Delivery for a session that is not connected."""
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=ErrorResponse(error="session_not_connected", detail=str(exc)).model_dump(),
    )


@app.get("/health", response_model=HealthResponse)
async def health(extractor: Extractor = Depends(get_extractor)) -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="ok",
        version=settings.version,
        extraction_available=extractor.available,
    )


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "app": settings.app_name,
        "version": settings.version,
        "endpoints": {
            "health": "/health",
            "webhook": "/webhook",
            "messages": "/tenants/{tenant_id}/messages",
            "process": "/tenants/{tenant_id}/messages/process",
            "retry_failed": "/tenants/{tenant_id}/messages/retry-failed",
            "products": "/tenants/{tenant_id}/products",
            "suppliers": "/tenants/{tenant_id}/suppliers",
            "docs": "/docs",
        },
    }


@app.post(
    "/webhook",
    response_model=WebhookResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def webhook(
    request: WebhookRequest,
    background_tasks: BackgroundTasks,
    directory: SessionDirectory = Depends(get_session_directory),
    backlog: MessageBacklog = Depends(get_backlog),
    pipeline: QuoteIngestionPipeline = Depends(get_pipeline),
) -> WebhookResponse:
    """Record a provider delivery and, if configured, process it in the background."""
    tenant_id = await resolve_connected_tenant(directory, request.session)
    message = await backlog.record_incoming(tenant_id, request.sender, request.message)

    if settings.pipeline.process_on_receipt:
        background_tasks.add_task(pipeline.process_message, message)

    return WebhookResponse(ok=True, message_id=message.id, tenant_id=tenant_id)


@app.post(
    "/tenants/{tenant_id}/messages",
    response_model=MessageDTO,
    status_code=status.HTTP_201_CREATED,
)
async def create_message(
    tenant_id: str,
    request: ManualMessageRequest,
    backlog: MessageBacklog = Depends(get_backlog),
) -> MessageDTO:
    """Manual entry; recorded unprocessed, picked up by the next batch."""
    message = await backlog.record_incoming(tenant_id, request.sender, request.content)
    return MessageDTO.from_domain(message)


@app.get("/tenants/{tenant_id}/messages", response_model=list[MessageDTO])
async def list_messages(
    tenant_id: str,
    order: Literal["newest", "oldest"] = "newest",
    status_filter: MessageFilter = Query(default=MessageFilter.ALL, alias="status"),
    limit: int = Query(default=100, ge=1, le=1000),
    backlog: MessageBacklog = Depends(get_backlog),
) -> list[MessageDTO]:
    """Backlog listing, newest first by default."""
    results: list[MessageDTO] = []
    listing = backlog.list_by_tenant(tenant_id, newest_first=(order == "newest"), status=status_filter)
    async with aclosing(listing) as messages:
        async for message in messages:
            results.append(MessageDTO.from_domain(message))
            if len(results) >= limit:
                break
    return results


@app.get("/tenants/{tenant_id}/messages/pending-count", response_model=PendingCountResponse)
async def pending_count(
    tenant_id: str,
    backlog: MessageBacklog = Depends(get_backlog),
) -> PendingCountResponse:
    return PendingCountResponse(tenant_id=tenant_id, pending=await backlog.unprocessed_count(tenant_id))


@app.post("/tenants/{tenant_id}/messages/process", response_model=BatchResponse)
async def process_pending(
    tenant_id: str,
    pipeline: QuoteIngestionPipeline = Depends(get_pipeline),
) -> BatchResponse:
    """Run the batch over every pending message of the tenant."""
    logger.info(f"Batch processing requested for tenant {tenant_id}")
    result = await pipeline.process_pending_for_tenant(tenant_id)
    return BatchResponse.from_result(result)


@app.post("/tenants/{tenant_id}/messages/retry-failed", response_model=BatchResponse)
async def retry_failed(
    tenant_id: str,
    reason: str | None = None,
    pipeline: QuoteIngestionPipeline = Depends(get_pipeline),
) -> BatchResponse:
    """Reopen failed messages (optionally one error reason) and reprocess."""
    result = await pipeline.retry_failed(tenant_id, reason=reason)
    return BatchResponse.from_result(result)


@app.get("/tenants/{tenant_id}/products", response_model=list[ProductDTO])
async def list_products(
    tenant_id: str,
    aggregator: PriceAggregator = Depends(get_aggregator),
) -> list[ProductDTO]:
    """Dashboard view: every product with its best price."""
    return [ProductDTO.from_domain(p) for p in await aggregator.aggregate_products(tenant_id)]


@app.get("/tenants/{tenant_id}/products/{product_id}", response_model=ProductDetailsResponse)
async def get_product(
    tenant_id: str,
    product_id: str,
    aggregator: PriceAggregator = Depends(get_aggregator),
    store: QuoteStore = Depends(get_store),
) -> ProductDetailsResponse:
    """Product, its best offer and its quote history, newest first."""
    details = await aggregator.product_details(tenant_id, product_id)
    suppliers = {s.id: s.name for s in await store.list_suppliers(tenant_id)}
    return ProductDetailsResponse(
        product=ProductDTO.from_domain(details.aggregated),
        quotes=[_quote_dto(q, suppliers) for q in details.quotes],
    )


@app.get("/tenants/{tenant_id}/suppliers", response_model=list[SupplierDTO])
async def list_suppliers(
    tenant_id: str,
    store: QuoteStore = Depends(get_store),
) -> list[SupplierDTO]:
    return [SupplierDTO(id=s.id, name=s.name) for s in await store.list_suppliers(tenant_id)]


def _quote_dto(quote: Quote, suppliers: dict[str, str]) -> QuoteDTO:
    return QuoteDTO(
        id=quote.id,
        supplier_id=quote.supplier_id,
        supplier_name=suppliers.get(quote.supplier_id),
        price=quote.price,
        conditions=quote.conditions,
        extracted_at=quote.extracted_at,
        source_message_id=quote.source_message_id,
    )
