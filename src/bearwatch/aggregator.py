from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Sequence
from datetime import date, timedelta

from .config import Settings, get_settings
from .errors import MissingCredentialsError, ScanTimeoutError
from .models import Provider, ProviderCounts, Sighting, Snapshot
from .sources import SightingAdapter, today_utc
from .storage import SnapshotStore

logger = logging.getLogger(__name__)


class ScanAggregator:
    """
    Runs every configured adapter concurrently under one overall timeout.
    The timeout races the combined gather, not each adapter: when it fires
    the whole scan fails and no partial results are kept.
    """

    def __init__(
        self,
        adapters: Sequence[SightingAdapter],
        store: SnapshotStore,
        *,
        settings: Settings | None = None,
        timeout: float | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._adapters = list(adapters)
        self._store = store
        self._timeout = timeout if timeout is not None else self._settings.scan_timeout

    @property
    def configured_adapters(self) -> list[SightingAdapter]:
        return [adapter for adapter in self._adapters if adapter.configured]

    async def scan(self, *, location: str | None = None, today: date | None = None) -> Snapshot:
        adapters = self.configured_adapters
        if not adapters:
            raise MissingCredentialsError("Missing API Keys. Please configure GOOGLE_API_KEY or XAI_API_KEY.")
        today = today or today_utc()
        cutoff = today - timedelta(days=self._settings.lookback_days)
        started = time.monotonic()

        tasks = [adapter.search(cutoff=cutoff, location=location, today=today) for adapter in adapters]
        try:
            results = await asyncio.wait_for(
                asyncio.gather(*tasks, return_exceptions=True),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.error(f"Scan timed out after {self._timeout:.1f}s")
            raise ScanTimeoutError("AI search timed out. Please try again in a moment.") from exc

        merged: list[Sighting] = []
        for adapter, result in zip(adapters, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(f"{adapter.provider.value} adapter raised unexpectedly: {result}")
                continue
            merged.extend(result)

        sightings = sort_by_recency(deduplicate(merged))
        snapshot = Snapshot(
            sightings=sightings,
            timestamp=int(time.time() * 1000),
            counts=count_by_provider(sightings),
        )
        elapsed = time.monotonic() - started
        logger.info(
            f"Scan complete in {elapsed:.2f}s. Total items: {len(sightings)} "
            f"(news={snapshot.counts.news}, social={snapshot.counts.social})"
        )
        if sightings:
            await self._store.replace(snapshot)
        else:
            logger.warning("Scan returned no data; keeping previous snapshot")
        return snapshot


def deduplicate(sightings: list[Sighting]) -> list[Sighting]:
    seen_ids: set[str] = set()
    seen_links: set[tuple[str, str]] = set()
    unique: list[Sighting] = []
    for item in sightings:
        if item.id in seen_ids:
            continue
        link_key = (item.url, item.date) if item.url else None
        if link_key and link_key in seen_links:
            continue
        seen_ids.add(item.id)
        if link_key:
            seen_links.add(link_key)
        unique.append(item)
    return unique


def sort_by_recency(sightings: list[Sighting]) -> list[Sighting]:
    return sorted(sightings, key=lambda item: item.date, reverse=True)


def count_by_provider(sightings: list[Sighting]) -> ProviderCounts:
    tally = Counter(item.provider for item in sightings)
    return ProviderCounts(news=tally[Provider.NEWS], social=tally[Provider.SOCIAL])
