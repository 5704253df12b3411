"""Tests for product/supplier entity resolution."""

import asyncio

import pytest

from pricebook.errors import ConflictError, ValidationError
from pricebook.pipelines.resolution import EntityResolver


@pytest.mark.asyncio
async def test_case_and_whitespace_variants_resolve_to_one_product(store):
    """Resubmitting a name with different case/spacing returns the same product."""
    resolver = EntityResolver(store)

    first = await resolver.resolve_product("user-001", "Caneta Azul BIC")
    second = await resolver.resolve_product("user-001", "  caneta azul bic  ")

    assert first.id == second.id
    assert len(await store.list_products("user-001")) == 1
    # Stored name is the first spelling seen
    assert second.name == "Caneta Azul BIC"


@pytest.mark.asyncio
async def test_same_name_in_two_tenants_gives_two_products(store):
    resolver = EntityResolver(store)

    a = await resolver.resolve_product("user-001", "Caneta Azul BIC")
    b = await resolver.resolve_product("user-002", "Caneta Azul BIC")

    assert a.id != b.id
    assert a.tenant_id == "user-001"
    assert b.tenant_id == "user-002"
    assert [p.id for p in await store.list_products("user-001")] == [a.id]


@pytest.mark.asyncio
async def test_suppliers_and_products_are_separate_namespaces(store):
    resolver = EntityResolver(store)

    product = await resolver.resolve_product("user-001", "Beta")
    supplier = await resolver.resolve_supplier("user-001", "beta")

    assert product.id != supplier.id
    assert (await resolver.resolve_supplier("user-001", "BETA ")).id == supplier.id


@pytest.mark.asyncio
async def test_blank_name_is_rejected(store):
    resolver = EntityResolver(store)

    with pytest.raises(ValidationError):
        await resolver.resolve_supplier("user-001", "   ")


@pytest.mark.asyncio
async def test_concurrent_first_resolution_creates_one_product(slow_store):
    """Racing creators of a brand-new name end up sharing one row."""
    resolver = EntityResolver(slow_store)
    names = ["Caderno 96fls", "caderno 96fls", " CADERNO  96FLS", "Caderno 96fls ", "caderno 96FLS"]

    products = await asyncio.gather(*(resolver.resolve_product("user-001", n) for n in names))

    assert len({p.id for p in products}) == 1
    assert len(await slow_store.list_products("user-001")) == 1


@pytest.mark.asyncio
async def test_concurrent_supplier_resolution_creates_one_supplier(slow_store):
    resolver = EntityResolver(slow_store)

    suppliers = await asyncio.gather(
        *(resolver.resolve_supplier("user-001", "Fornecedor Alpha") for _ in range(4))
    )

    assert len({s.id for s in suppliers}) == 1
    assert len(await slow_store.list_suppliers("user-001")) == 1


@pytest.mark.asyncio
async def test_store_rejects_duplicate_normalized_name(store):
    resolver = EntityResolver(store)
    product = await resolver.resolve_product("user-001", "Caneta")

    with pytest.raises(ConflictError):
        await store.create_product(product, "caneta")


@pytest.mark.asyncio
async def test_name_longer_than_column_is_rejected(store):
    resolver = EntityResolver(store)

    with pytest.raises(ValidationError):
        await resolver.resolve_product("user-001", "Caneta " + "x" * 300)
    assert await store.list_products("user-001") == []
