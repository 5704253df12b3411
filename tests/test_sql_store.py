"""Tests for the SQLAlchemy store against a throwaway SQLite file."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ai.extraction import parse_fact_payload
from pricebook.db import build_engine
from pricebook.domain import ExtractedFact, Product, Quote, RawMessage, new_id
from pricebook.errors import ConflictError, IngestionNotAllowed, NotFoundError, UnknownSession
from pricebook.models import Base
from pricebook.pipelines.aggregation import PriceAggregator
from pricebook.pipelines.ingest import MessageBacklog
from pricebook.pipelines.processing import EXTRACTION_FAILED, MessageOutcome, QuoteIngestionPipeline
from pricebook.sessions import ChannelSession, ConnectionStatus, resolve_connected_tenant
from pricebook.sql_store import SqlQuoteStore, SqlSessionDirectory
from pricebook.store import MessageFilter

T0 = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def sessionmaker(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'pricebook.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)
    await engine.dispose()


@pytest.fixture
def sql_store(sessionmaker):
    return SqlQuoteStore(sessionmaker)


def message(tenant_id="user-001", minutes=0, content="Caneta R$ 2,00"):
    return RawMessage(
        id=new_id(),
        tenant_id=tenant_id,
        sender="Alpha",
        content=content,
        received_at=T0 + timedelta(minutes=minutes),
    )


@pytest.mark.asyncio
async def test_message_roundtrip_keeps_utc(sql_store):
    original = message()
    await sql_store.add_message(original)

    stored = await sql_store.get_message("user-001", original.id)

    assert stored == original
    assert stored.received_at.tzinfo is not None
    assert await sql_store.get_message("user-002", original.id) is None


@pytest.mark.asyncio
async def test_iter_messages_orders_and_filters(sql_store):
    older, newer = message(minutes=0), message(minutes=5)
    await sql_store.add_message(newer)
    await sql_store.add_message(older)
    await sql_store.commit_outcome("user-001", older.id, error=EXTRACTION_FAILED)

    newest_first = [m.id async for m in sql_store.iter_messages("user-001")]
    oldest_first = [m.id async for m in sql_store.iter_messages("user-001", newest_first=False)]
    failed = [m.id async for m in sql_store.iter_messages("user-001", status=MessageFilter.FAILED)]
    pending = [m.id async for m in sql_store.iter_messages("user-001", status=MessageFilter.PENDING)]

    assert newest_first == [newer.id, older.id]
    assert oldest_first == [older.id, newer.id]
    assert failed == [older.id]
    assert pending == [newer.id]
    assert await sql_store.count_unprocessed("user-001") == 1


@pytest.mark.asyncio
async def test_commit_outcome_only_once(sql_store):
    msg = message()
    await sql_store.add_message(msg)
    await sql_store.commit_outcome("user-001", msg.id, error=EXTRACTION_FAILED)

    with pytest.raises(ConflictError):
        await sql_store.commit_outcome("user-001", msg.id)
    with pytest.raises(NotFoundError):
        await sql_store.commit_outcome("user-002", msg.id)

    assert (await sql_store.get_message("user-001", msg.id)).processing_error == EXTRACTION_FAILED


@pytest.mark.asyncio
async def test_quote_with_foreign_product_rolls_back(sql_store):
    msg = message()
    await sql_store.add_message(msg)
    foreign = Product(id=new_id(), tenant_id="user-002", name="Caneta")
    await sql_store.create_product(foreign, "caneta")
    quote = Quote(
        id=new_id(),
        tenant_id="user-001",
        product_id=foreign.id,
        supplier_id="missing",
        price=Decimal("2.00"),
        extracted_at=T0,
        source_message_id=msg.id,
    )

    with pytest.raises(NotFoundError):
        await sql_store.commit_outcome("user-001", msg.id, quote=quote)

    # Flag flip was rolled back with the quote
    assert (await sql_store.get_message("user-001", msg.id)).processed is False
    assert await sql_store.list_quotes("user-001") == []


@pytest.mark.asyncio
async def test_unique_index_raises_conflict(sql_store):
    await sql_store.create_product(Product(id=new_id(), tenant_id="user-001", name="Caneta"), "caneta")

    with pytest.raises(ConflictError):
        await sql_store.create_product(Product(id=new_id(), tenant_id="user-001", name="CANETA"), "caneta")
    # Another tenant may use the same name
    await sql_store.create_product(Product(id=new_id(), tenant_id="user-002", name="Caneta"), "caneta")


@pytest.mark.asyncio
async def test_reset_failed_by_reason(sql_store):
    a, b = message(minutes=0), message(minutes=1)
    for m in (a, b):
        await sql_store.add_message(m)
    await sql_store.commit_outcome("user-001", a.id, error="service unavailable")
    await sql_store.commit_outcome("user-001", b.id, error=EXTRACTION_FAILED)

    assert await sql_store.reset_failed("user-001", "service unavailable") == 1
    assert await sql_store.count_unprocessed("user-001") == 1
    assert await sql_store.reset_failed("user-001") == 1
    assert await sql_store.count_unprocessed("user-001") == 2


@pytest.mark.asyncio
async def test_pipeline_end_to_end(sql_store, clock, make_extractor):
    extractor = make_extractor({
        "a": ExtractedFact("Caneta Azul BIC", Decimal("10"), "Supplier A"),
        "b": ExtractedFact("caneta azul bic", Decimal("8.5"), "Supplier B"),
        "c": ExtractedFact("CANETA AZUL BIC", Decimal("8.50"), "Supplier C"),
    })
    pipeline = QuoteIngestionPipeline(sql_store, extractor, concurrency=1, clock=clock)
    backlog = MessageBacklog(sql_store, clock=clock)
    for text in ("a", "b", "c", "bom dia"):
        await backlog.record_incoming("user-001", "x", text)

    result = await pipeline.process_pending_for_tenant("user-001")

    assert (result.succeeded, result.failed) == (3, 1)
    (product,) = await PriceAggregator(sql_store).aggregate_products("user-001")
    assert product.product.name == "Caneta Azul BIC"
    assert product.best_price == Decimal("8.5")
    assert product.best_supplier_name == "Supplier B"

    first = await backlog.pending("user-001")
    assert first == []
    stale = (await PriceAggregator(sql_store).product_details("user-001", product.product.id)).quotes[0]
    stale_message = await sql_store.get_message("user-001", stale.source_message_id)
    stale_message.processed = False
    assert await pipeline.process_message(stale_message) is MessageOutcome.SKIPPED
    assert len(await sql_store.list_quotes("user-001")) == 3


@pytest.mark.asyncio
async def test_session_directory(sessionmaker):
    directory = SqlSessionDirectory(sessionmaker)
    await directory.save(ChannelSession("wa-1", "user-001", ConnectionStatus.PENDING_QR))

    with pytest.raises(IngestionNotAllowed):
        await resolve_connected_tenant(directory, "wa-1")

    await directory.save(ChannelSession("wa-1", "user-001", ConnectionStatus.CONNECTED))
    assert await resolve_connected_tenant(directory, "wa-1") == "user-001"
    with pytest.raises(UnknownSession):
        await resolve_connected_tenant(directory, "wa-2")


@pytest.mark.asyncio
async def test_prices_the_column_cannot_hold_exactly_are_rejected(sql_store, clock, make_extractor):
    """Sub-cent or oversized prices fail the message instead of being rounded on insert."""
    extractor = make_extractor({
        "tiny": parse_fact_payload('{"productName": "Parafuso", "price": 0.00001}'),
        "rounded": ExtractedFact("Porca", Decimal("8.12345")),
        "huge": ExtractedFact("Arruela", Decimal("12345678901")),
        "exact": ExtractedFact("Rebite", Decimal("8.1234")),
    })
    pipeline = QuoteIngestionPipeline(sql_store, extractor, concurrency=1, clock=clock)
    for text in ("tiny", "rounded", "huge", "exact"):
        await pipeline.backlog.record_incoming("user-001", "Alpha", text)

    result = await pipeline.process_pending_for_tenant("user-001")

    assert (result.succeeded, result.failed) == (1, 3)
    (quote,) = await sql_store.list_quotes("user-001")
    assert quote.price == Decimal("8.1234")
    failed = [m async for m in sql_store.iter_messages("user-001", status=MessageFilter.FAILED)]
    assert {m.content for m in failed} == {"tiny", "rounded", "huge"}
    assert {m.processing_error for m in failed} == {EXTRACTION_FAILED}
    for product in await sql_store.list_products("user-001"):
        best = await PriceAggregator(sql_store).best_price_for("user-001", product.id)
        assert best is None or best.price > 0
