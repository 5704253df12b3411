"""Message backlog: record inbound supplier messages and expose them for processing.

Reusable from the webhook handler, manual entry and batch jobs.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator, Callable

from ..domain import RawMessage, new_id, utcnow
from ..store import MessageFilter, QuoteStore

logger = logging.getLogger(__name__)


class MessageBacklog:
    """Append-only record of inbound messages per tenant."""

    def __init__(self, store: QuoteStore, *, clock: Callable = utcnow) -> None:
        self.store = store
        self._clock = clock

    async def record_incoming(self, tenant_id: str, sender: str, content: str) -> RawMessage:
        """Store a new unprocessed message.

        Identical content is recorded again: repeated broadcasts are distinct
        events.
        """
        message = RawMessage(
            id=new_id(),
            tenant_id=tenant_id,
            sender=sender,
            content=content,
            received_at=self._clock(),
        )
        await self.store.add_message(message)
        logger.info(f"Recorded message {message.id} from {sender!r} for tenant {tenant_id}")
        return message

    async def unprocessed_count(self, tenant_id: str) -> int:
        return await self.store.count_unprocessed(tenant_id)

    def list_by_tenant(
        self,
        tenant_id: str,
        *,
        newest_first: bool = True,
        status: MessageFilter = MessageFilter.ALL,
    ) -> AsyncIterator[RawMessage]:
        """Lazy listing; every call starts a fresh read."""
        return self.store.iter_messages(tenant_id, newest_first=newest_first, status=status)

    async def pending(self, tenant_id: str) -> list[RawMessage]:
        """Unprocessed messages in insertion (oldest-first) order."""
        return [
            message
            async for message in self.store.iter_messages(
                tenant_id, newest_first=False, status=MessageFilter.PENDING
            )
        ]
