"""Quote ingestion pipeline: raw message -> extracted fact -> resolved entities -> quote.

Per message:
1. Skip if already processed
2. Extraction capability missing -> terminal "service unavailable"
3. Extract and validate the fact; failure -> terminal "extraction failed"
4. Resolve product and supplier (supplier falls back to the sender)
5. Commit the quote and the processed flag in one store call

Batches run a small pool of workers over a tenant's pending messages in
insertion order. Each message's outcome is committed on its own, so one bad
message never stops the others and a stopped batch leaves no half-written
message behind.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable

from ai.extraction import Extractor
from pricebook.config import settings
from pricebook.domain import (
    NAME_MAX_LENGTH,
    PRICE_PRECISION,
    PRICE_SCALE,
    ExtractedFact,
    Quote,
    RawMessage,
    new_id,
    utcnow,
)
from pricebook.errors import ConflictError, NoExtraction, NotFoundError, ServiceUnavailable, ValidationError
from pricebook.pipelines.ingest import MessageBacklog
from pricebook.pipelines.normalization import display_name, normalize_name
from pricebook.pipelines.resolution import EntityResolver
from pricebook.store import QuoteStore

logger = logging.getLogger(__name__)

SERVICE_UNAVAILABLE = "service unavailable"
EXTRACTION_FAILED = "extraction failed"
UNKNOWN_SUPPLIER = "Unknown Supplier"

_PRICE_STEP = Decimal(1).scaleb(-PRICE_SCALE)


class MessageOutcome(str, Enum):
    """Terminal state reached by one ``process_message`` call."""
    QUOTED = "quoted"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class BatchResult:
    """Counts for one batch run."""
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    def record(self, outcome: MessageOutcome) -> None:
        if outcome is MessageOutcome.QUOTED:
            self.succeeded += 1
        elif outcome is MessageOutcome.FAILED:
            self.failed += 1
        else:
            self.skipped += 1


def validate_fact(fact: ExtractedFact) -> None:
    """Core invariants an extracted fact must meet before it becomes a quote.

    Prices must be storable exactly: at most ``PRICE_SCALE`` decimal places
    and ``PRICE_PRECISION`` digits in total.

    Raises:
        ValidationError: blank or over-long names, or a price that is
            non-positive, non-finite or not exactly storable
    """
    if not normalize_name(fact.product_name or ""):
        raise ValidationError("product name is blank")
    for kind, name in (("product", fact.product_name), ("supplier", fact.supplier_name)):
        if name and max(len(display_name(name)), len(normalize_name(name))) > NAME_MAX_LENGTH:
            raise ValidationError(f"{kind} name longer than {NAME_MAX_LENGTH} characters")

    price = fact.price
    if not price.is_finite() or price <= 0:
        raise ValidationError(f"price must be positive, got {price}")
    if price.adjusted() >= PRICE_PRECISION - PRICE_SCALE:
        raise ValidationError(f"price {price} exceeds {PRICE_PRECISION - PRICE_SCALE} integer digits")
    if price.quantize(_PRICE_STEP) != price:
        raise ValidationError(f"price {price} has more than {PRICE_SCALE} decimal places")


class QuoteIngestionPipeline:
    """Turns backlog messages into quotes."""

    def __init__(
        self,
        store: QuoteStore,
        extractor: Extractor,
        *,
        concurrency: int | None = None,
        clock: Callable = utcnow,
    ) -> None:
        self.store = store
        self.extractor = extractor
        self.resolver = EntityResolver(store)
        self.backlog = MessageBacklog(store, clock=clock)
        self.concurrency = concurrency or settings.pipeline.concurrency
        self._clock = clock

    async def process_message(self, message: RawMessage) -> MessageOutcome:
        """Run one message to a terminal state.

        ``message`` is updated in place to mirror the committed state.

        Raises:
            NotFoundError: the message does not exist for its tenant
        """
        if message.processed:
            return MessageOutcome.SKIPPED

        current = await self.store.get_message(message.tenant_id, message.id)
        if current is None:
            raise NotFoundError(f"message {message.id} not found for tenant {message.tenant_id}")
        if current.processed:
            self._mirror(message, current.processing_error)
            return MessageOutcome.SKIPPED

        if not self.extractor.available:
            logger.warning(f"Extraction unavailable; marking message {message.id}")
            return await self._commit(message, error=SERVICE_UNAVAILABLE)

        try:
            fact = await self.extractor.extract(message.content)
            validate_fact(fact)
        except ServiceUnavailable as e:
            logger.warning(f"Extraction service unavailable for message {message.id}: {e}")
            return await self._commit(message, error=SERVICE_UNAVAILABLE)
        except (NoExtraction, ValidationError) as e:
            logger.warning(f"No quote in message {message.id}: {e}")
            return await self._commit(message, error=EXTRACTION_FAILED)
        except Exception as e:
            logger.error(f"Extractor crashed on message {message.id}: {e}", exc_info=True)
            return await self._commit(message, error=EXTRACTION_FAILED)

        try:
            product = await self.resolver.resolve_product(message.tenant_id, fact.product_name)
            supplier = await self.resolver.resolve_supplier(
                message.tenant_id,
                fact.supplier_name or message.sender or UNKNOWN_SUPPLIER,
            )
        except ValidationError as e:
            logger.warning(f"Unresolvable names in message {message.id}: {e}")
            return await self._commit(message, error=EXTRACTION_FAILED)

        quote = Quote(
            id=new_id(),
            tenant_id=message.tenant_id,
            product_id=product.id,
            supplier_id=supplier.id,
            price=fact.price,
            conditions=fact.conditions,
            extracted_at=self._clock(),
            source_message_id=message.id,
        )
        return await self._commit(message, quote=quote)

    async def process_pending_for_tenant(
        self,
        tenant_id: str,
        *,
        stop: asyncio.Event | None = None,
    ) -> BatchResult:
        """Process every unprocessed message of a tenant.

        Workers check ``stop`` after each committed message and exit once it
        is set; messages not yet started stay pending.
        """
        pending = await self.backlog.pending(tenant_id)
        result = BatchResult()
        if not pending:
            return result

        queue: asyncio.Queue[RawMessage] = asyncio.Queue()
        for message in pending:
            queue.put_nowait(message)

        async def worker() -> None:
            while not (stop is not None and stop.is_set()):
                try:
                    message = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    outcome = await self.process_message(message)
                except Exception as e:
                    # Left pending; the next batch picks it up again
                    logger.error(f"Message {message.id} could not be processed: {e}", exc_info=True)
                    result.failed += 1
                    continue
                result.record(outcome)

        workers = min(self.concurrency, len(pending))
        logger.info(f"Processing {len(pending)} pending message(s) for tenant {tenant_id} with {workers} worker(s)")
        await asyncio.gather(*(worker() for _ in range(workers)))

        logger.info(
            f"Batch for tenant {tenant_id}: {result.succeeded} quoted, "
            f"{result.failed} failed, {result.skipped} skipped"
        )
        return result

    async def retry_failed(self, tenant_id: str, *, reason: str | None = None) -> BatchResult:
        """Operator-triggered reprocessing of messages that ended with an error."""
        reopened = await self.store.reset_failed(tenant_id, reason)
        logger.info(f"Reopened {reopened} failed message(s) for tenant {tenant_id}")
        return await self.process_pending_for_tenant(tenant_id)

    async def _commit(
        self,
        message: RawMessage,
        *,
        quote: Quote | None = None,
        error: str | None = None,
    ) -> MessageOutcome:
        try:
            await self.store.commit_outcome(message.tenant_id, message.id, quote=quote, error=error)
        except ConflictError:
            logger.debug(f"Message {message.id} was committed by another worker")
            current = await self.store.get_message(message.tenant_id, message.id)
            self._mirror(message, current.processing_error if current else None)
            return MessageOutcome.SKIPPED

        self._mirror(message, error)
        if quote is not None:
            logger.info(f"Quote {quote.id} at {quote.price} from message {message.id}")
            return MessageOutcome.QUOTED
        return MessageOutcome.FAILED

    @staticmethod
    def _mirror(message: RawMessage, error: str | None) -> None:
        message.processed = True
        message.processing_error = error
