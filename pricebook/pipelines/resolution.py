"""Entity resolution: map noisy product/supplier names to stable tenant-scoped ids.

Lookup is by normalized name; a miss creates the entity. Concurrent creators
of the same new name race on the store's unique key, and the loser re-reads
the winner's row instead of failing.
"""
from __future__ import annotations

import logging
from typing import Awaitable, Callable, TypeVar

from ..domain import NAME_MAX_LENGTH, Product, Supplier, new_id
from ..errors import ConflictError, ValidationError
from ..store import QuoteStore
from .normalization import display_name, normalize_name

logger = logging.getLogger(__name__)

EntityT = TypeVar("EntityT", Product, Supplier)


class EntityResolver:
    """Find-or-create for products and suppliers of one store."""

    def __init__(self, store: QuoteStore) -> None:
        self.store = store

    async def resolve_product(self, tenant_id: str, raw_name: str) -> Product:
        return await self._resolve(
            tenant_id,
            raw_name,
            kind="product",
            find=self.store.find_product,
            create=self.store.create_product,
            factory=Product,
        )

    async def resolve_supplier(self, tenant_id: str, raw_name: str) -> Supplier:
        return await self._resolve(
            tenant_id,
            raw_name,
            kind="supplier",
            find=self.store.find_supplier,
            create=self.store.create_supplier,
            factory=Supplier,
        )

    async def _resolve(
        self,
        tenant_id: str,
        raw_name: str,
        *,
        kind: str,
        find: Callable[[str, str], Awaitable[EntityT | None]],
        create: Callable[[EntityT, str], Awaitable[None]],
        factory: Callable[..., EntityT],
    ) -> EntityT:
        key = normalize_name(raw_name or "")
        if not key:
            raise ValidationError(f"empty {kind} name")
        name = display_name(raw_name)
        if max(len(name), len(key)) > NAME_MAX_LENGTH:
            raise ValidationError(f"{kind} name longer than {NAME_MAX_LENGTH} characters")

        existing = await find(tenant_id, key)
        if existing is not None:
            return existing

        entity = factory(id=new_id(), tenant_id=tenant_id, name=name)
        try:
            await create(entity, key)
        except ConflictError:
            # Lost the race: another worker created it between find and create
            winner = await find(tenant_id, key)
            if winner is None:
                raise
            logger.debug(f"Resolved {kind} {key!r} after create conflict -> {winner.id}")
            return winner

        logger.info(f"Created {kind} {entity.name!r} ({entity.id}) for tenant {tenant_id}")
        return entity
