from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from gestionale.client import CrmApiClient, CrmApiError
from gestionale.core.config import get_settings


logger = logging.getLogger("gestionale.crm.selector")

Lookup = Callable[[str, dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class SelectorQuery:
    text: str
    filters: dict[str, Any] = field(default_factory=dict)


class SelectorSession:
    """Debounced lookups for an interactive selector.

    Every ``update`` restarts the debounce window, so only the last query of a burst is looked
    up. A lookup started for an older query never replaces the result of a newer one. Failed or
    timed-out lookups keep their query for ``retry``; nothing retries on its own.
    """

    def __init__(
        self,
        lookup: Lookup,
        *,
        debounce_ms: int | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        settings = get_settings()
        self._lookup = lookup
        self._debounce = (debounce_ms if debounce_ms is not None else settings.selector_debounce_ms) / 1000
        self._timeout = timeout_seconds if timeout_seconds is not None else settings.api_timeout_seconds
        self._generation = 0
        self._active_generation: int | None = None
        self._task: asyncio.Task[None] | None = None

        self.query: SelectorQuery | None = None
        self.result: Any = None
        self.error: str | None = None
        self.in_flight = False
        self.lookups_issued = 0

    @classmethod
    def for_entities(cls, client: CrmApiClient, entity_type: str, **kwargs: Any) -> "SelectorSession":
        async def lookup(text: str, filters: dict[str, Any]) -> Any:
            return await client.search_entities(entity_type, text, **filters)

        return cls(lookup, **kwargs)

    @classmethod
    def for_affiliations(cls, client: CrmApiClient, organization_id: str, **kwargs: Any) -> "SelectorSession":
        async def lookup(text: str, filters: dict[str, Any]) -> Any:
            return await client.list_affiliations(organization_id, text or None)

        return cls(lookup, **kwargs)

    def update(self, text: str, **filters: Any) -> None:
        self.query = SelectorQuery(text=text, filters={key: value for key, value in filters.items() if value is not None})
        self._schedule(self._debounce)

    async def retry(self) -> None:
        if self.query is None:
            return
        self._schedule(0)
        await self.wait_idle()

    async def wait_idle(self) -> None:
        while self._task is not None and not self._task.done():
            await asyncio.gather(self._task, return_exceptions=True)

    def cancel(self) -> None:
        self._generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self.in_flight = False

    def _schedule(self, delay: float) -> None:
        self._generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
        assert self.query is not None
        self._task = asyncio.get_running_loop().create_task(self._run(self._generation, self.query, delay))

    async def _run(self, generation: int, query: SelectorQuery, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)

        self._active_generation = generation
        self.in_flight = True
        self.lookups_issued += 1
        try:
            result = await asyncio.wait_for(self._lookup(query.text, dict(query.filters)), timeout=self._timeout)
        except asyncio.TimeoutError:
            if generation == self._generation:
                self.error = "lookup timed out, retry"
            logger.warning("selector.lookup_timeout", extra={"action": "selector_lookup", "status": query.text})
            return
        except (CrmApiError, httpx.HTTPError) as exc:
            if generation == self._generation:
                self.error = "lookup failed, retry"
            logger.warning("selector.lookup_failed", extra={"action": "selector_lookup", "error": str(exc)})
            return
        finally:
            if self._active_generation == generation:
                self.in_flight = False
                self._active_generation = None

        if generation != self._generation:
            return
        self.result = result
        self.error = None
