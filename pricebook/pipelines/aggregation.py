"""Price aggregation: best (lowest) offer per product, derived from stored quotes.

Nothing here writes. Every result is recomputed from the quote history, so
repeated calls over unchanged data return identical values.
"""
from __future__ import annotations

import logging
from typing import Iterable

from ..domain import AggregatedProduct, BestPrice, Product, ProductDetails, Quote
from ..errors import NotFoundError
from ..store import QuoteStore

logger = logging.getLogger(__name__)


def select_best_quote(quotes: Iterable[Quote]) -> Quote | None:
    """Lowest price wins; ties go to the earliest ``extracted_at``.

    Quotes sharing both price and timestamp keep their input order.
    """
    best: Quote | None = None
    for quote in quotes:
        if best is None or (quote.price, quote.extracted_at) < (best.price, best.extracted_at):
            best = quote
    return best


class PriceAggregator:
    """Read-side view over a ``QuoteStore``."""

    def __init__(self, store: QuoteStore) -> None:
        self.store = store

    async def best_price_for(self, tenant_id: str, product_id: str) -> BestPrice | None:
        """Best offer for one product, or None when it has no quotes.

        Raises:
            NotFoundError: product does not exist for this tenant
        """
        product = await self._require_product(tenant_id, product_id)
        quotes = await self.store.list_quotes(tenant_id, product.id)
        return await self._best_from(tenant_id, quotes)

    async def aggregate_products(self, tenant_id: str) -> list[AggregatedProduct]:
        """Every product of the tenant with its best price (dashboard view)."""
        products = await self.store.list_products(tenant_id)
        quotes = await self.store.list_quotes(tenant_id)
        suppliers = {s.id: s.name for s in await self.store.list_suppliers(tenant_id)}

        by_product: dict[str, list[Quote]] = {}
        for quote in quotes:
            by_product.setdefault(quote.product_id, []).append(quote)

        aggregated = []
        for product in products:
            best = select_best_quote(by_product.get(product.id, []))
            aggregated.append(self._aggregate(product, best, suppliers))

        logger.debug(f"Aggregated {len(aggregated)} products for tenant {tenant_id}")
        return aggregated

    async def product_details(self, tenant_id: str, product_id: str) -> ProductDetails:
        """Product, best offer and quote history newest first."""
        product = await self._require_product(tenant_id, product_id)
        quotes = await self.store.list_quotes(tenant_id, product.id)
        best = select_best_quote(quotes)
        suppliers = {s.id: s.name for s in await self.store.list_suppliers(tenant_id)}

        history = sorted(quotes, key=lambda q: q.extracted_at, reverse=True)
        return ProductDetails(aggregated=self._aggregate(product, best, suppliers), quotes=history)

    async def _require_product(self, tenant_id: str, product_id: str) -> Product:
        product = await self.store.get_product(tenant_id, product_id)
        if product is None:
            raise NotFoundError(f"product {product_id} not found for tenant {tenant_id}")
        return product

    async def _best_from(self, tenant_id: str, quotes: list[Quote]) -> BestPrice | None:
        best = select_best_quote(quotes)
        if best is None:
            return None
        supplier = await self.store.get_supplier(tenant_id, best.supplier_id)
        if supplier is None:
            raise NotFoundError(f"supplier {best.supplier_id} not found for tenant {tenant_id}")
        return BestPrice(price=best.price, supplier_name=supplier.name, quote_id=best.id)

    @staticmethod
    def _aggregate(product: Product, best: Quote | None, suppliers: dict[str, str]) -> AggregatedProduct:
        if best is None:
            return AggregatedProduct(product=product)
        if best.supplier_id not in suppliers:
            raise NotFoundError(f"supplier {best.supplier_id} not found for tenant {product.tenant_id}")
        return AggregatedProduct(
            product=product,
            best_price=best.price,
            best_supplier_name=suppliers[best.supplier_id],
        )
