"""
pagination.py
-------------
ChartSync — EMR Sync & Audited Records — Pagination Engine
----------------------------------------------------------
Follows the EMR's ``next`` pointers from a starting path until the
collection is exhausted, accumulating records in provider order.

Policy:
  - Pages are fetched strictly one after another; a ``next`` pointer may
    encode cursor state that is only valid once the prior page completed.
  - The first failed or undecodable page stops the walk.  Records from the
    pages already fetched are returned, never discarded, and nothing is
    raised.  Pages are not retried.
  - A fixed courtesy delay separates consecutive page requests.
  - ``max_pages`` (default 100) is a hard ceiling against provider
    pagination bugs; a ``next`` pointer seen twice also stops the walk.
  - Restarting an entity is a fresh ``fetch_all`` call from its start path.

Project: ChartSync — EMR Sync & Audited Records
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from emr_client import EMRClient
from errors import PageDecodeError
from schemas import decode_page

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGES = 100
DEFAULT_PAGE_DELAY_S = 0.2


@dataclass
class PageResult:
    """
    Records accumulated by one ``fetch_all`` walk.

    ``complete`` is ``False`` when a page failed (the records are then the
    pages before it).  ``truncated`` is ``True`` when ``max_pages`` was hit
    while the provider still advertised a next page.
    """

    records: List[Dict[str, Any]] = field(default_factory=list)
    total_fetched: int = 0
    pages_fetched: int = 0
    complete: bool = True
    truncated: bool = False
    last_status: Optional[int] = None
    error: Optional[str] = None
    reauthorization_required: bool = False


class Paginator:
    """
    Exhaustive, rate-limited pagination over one EMR client.

    Args:
        client:       Principal-bound EMR client.
        page_delay_s: Delay between consecutive page requests.
        sleep:        Awaitable sleep (tests inject a recorder).
    """

    def __init__(
        self,
        client: EMRClient,
        *,
        page_delay_s: float = DEFAULT_PAGE_DELAY_S,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self.page_delay_s = page_delay_s
        self._sleep = sleep

    async def fetch_all(self, entity_path: str, max_pages: int = DEFAULT_MAX_PAGES) -> PageResult:
        """
        Fetch every page of ``entity_path``.

        Args:
            entity_path: Starting path or URL (e.g. ``"allergies?page_size=100"``).
            max_pages:   Hard ceiling on pages fetched.

        Returns:
            PageResult: Always returned; failures are described, not raised.

        Raises:
            ValueError: if ``max_pages`` is not positive.
        """
        if max_pages < 1:
            raise ValueError(f"max_pages must be >= 1, got {max_pages}.")

        result = PageResult()
        next_url: Optional[str] = entity_path
        seen: Set[str] = set()

        while next_url and result.pages_fetched < max_pages:
            seen.add(next_url)
            page_number = result.pages_fetched + 1
            resp = await self._client.request(next_url)
            result.last_status = resp.status

            if not resp.ok:
                logger.error(
                    "Paginator: %s failed at page %d (HTTP %d) — keeping %d record(s).",
                    entity_path, page_number, resp.status, len(result.records),
                )
                return self._stop(
                    result,
                    resp.error or f"HTTP {resp.status} at page {page_number}",
                    resp.reauthorization_required,
                )

            try:
                page = decode_page(resp.data)
            except PageDecodeError as exc:
                logger.error(
                    "Paginator: %s page %d has an unsupported shape — %s",
                    entity_path, page_number, exc,
                )
                return self._stop(result, f"Undecodable page {page_number}: {exc}")

            result.records.extend(page.records)
            result.pages_fetched = page_number
            result.total_fetched = len(result.records)
            next_url = page.next_url

            if next_url and next_url in seen:
                logger.error(
                    "Paginator: %s returned an already-visited next pointer at page %d.",
                    entity_path, page_number,
                )
                return self._stop(result, f"Pagination cycle detected after page {page_number}")

            if next_url and result.pages_fetched < max_pages:
                await self._sleep(self.page_delay_s)

        if next_url:
            result.truncated = True
            logger.warning(
                "Paginator: %s stopped at the %d-page ceiling with more pages pending.",
                entity_path, max_pages,
            )

        logger.debug(
            "Paginator: %s — %d record(s) in %d page(s).",
            entity_path, result.total_fetched, result.pages_fetched,
        )
        return result

    @staticmethod
    def _stop(result: PageResult, error: str, reauthorization_required: bool = False) -> PageResult:
        result.complete = False
        result.error = error
        result.reauthorization_required = reauthorization_required
        result.total_fetched = len(result.records)
        return result
