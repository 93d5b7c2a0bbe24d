"""
Aggregation pipeline: viewport + category list -> published POI state.

One pass at a time per pipeline (a request arriving while a pass is in
flight is ignored). Categories run sequentially in caller order with a
throttle between them; a failing category only contributes to the error
summary. Shared source queries are fetched once per pass and split among
the requesting categories by their membership predicate.
"""

import asyncio
import functools
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from trakke import metrics
from trakke.admin_store import AdminPOIStore
from trakke.cache import ViewportCache
from trakke.categories import Category, CategoryRouter, PriorityTier, coerce_category, priority_tier
from trakke.config import get_config
from trakke.models import NORWAY_BOUNDS, POI, PublishedState, ViewportBounds
from trakke.normalize import NormalizationStats, Normalizer
from trakke.providers.base import MalformedResponseError, ServiceError, SourceAdapter
from trakke.retry import FetchOutcome, RetryController
from trakke.utils.async_utils import CancellationToken, SleepFn, TokenCancelled, cancellable_sleep

logger = logging.getLogger(__name__)

Listener = Callable[[PublishedState], None]


@dataclass
class AggregationReport:
    """Outcome of one load, for logging and tests."""
    from_cache: bool = False
    failed_categories: List[Category] = field(default_factory=list)
    rejected: int = 0
    truncated: int = 0
    network_calls: int = 0
    cancelled: bool = False
    poi_count: int = 0
    error: Optional[str] = None


def failure_message(failed: List[Category], requested: List[Category]) -> Optional[str]:
    if not failed:
        return None
    names = ", ".join(c.value for c in failed)
    if len(failed) == len(requested):
        return f"All {len(requested)} categories failed to load: {names}"
    return f"{len(failed)} of {len(requested)} categories failed to load: {names}"


class AggregationPipeline:
    """Orchestrates cache, routing, retries and normalization for one map view."""

    def __init__(
        self,
        adapters: Optional[Iterable[SourceAdapter]] = None,
        cache: Optional[ViewportCache] = None,
        router: Optional[CategoryRouter] = None,
        normalizer: Optional[Normalizer] = None,
        retry: Optional[RetryController] = None,
        admin_store: Optional[AdminPOIStore] = None,
        sleep: SleepFn = asyncio.sleep,
        max_pois: Optional[int] = None,
        inter_category_delay: Optional[float] = None,
        tier_delays: Optional[List[float]] = None,
    ):
        config = get_config()
        if adapters is None:
            from trakke.providers.overpass_provider import OverpassAdapter
            from trakke.providers.riksantikvaren_provider import RiksantikvarenAdapter
            from trakke.providers.wfs_provider import WFSAdapter
            adapters = [OverpassAdapter(), WFSAdapter(), RiksantikvarenAdapter()]
        self.adapters: List[SourceAdapter] = list(adapters)
        for adapter in self.adapters:
            meta = adapter.get_metadata()
            logger.debug(f"[PIPELINE] source {meta.source}: {meta.name} ({meta.endpoint})")
        self.cache = cache or ViewportCache()
        self.router = router or CategoryRouter()
        self.normalizer = normalizer or Normalizer()
        self.retry = retry or RetryController(sleep=sleep)
        self.admin_store = admin_store
        self._sleep = sleep

        pipeline_config = config.pipeline_config
        self.max_pois = max_pois if max_pois is not None else pipeline_config.max_pois_per_viewport
        self.inter_category_delay = (
            inter_category_delay if inter_category_delay is not None
            else pipeline_config.inter_category_delay
        )
        delays = tier_delays if tier_delays is not None else pipeline_config.catalog_tier_delays
        self.tier_delays = dict(zip((PriorityTier.HIGH, PriorityTier.MEDIUM, PriorityTier.LOW), delays))
        self.viewport_timeout = config.get_timeout("viewport")
        self.background_timeout = config.get_timeout("background")

        self._state = PublishedState()
        self._listeners: List[Listener] = []
        self._in_flight = False
        self._generation = 0
        self._token: Optional[CancellationToken] = None

    @property
    def state(self) -> PublishedState:
        return self._state

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def subscribe(self, callback: Listener) -> Callable[[], None]:
        """Register a listener called on every publish. Returns an unsubscribe function."""
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)
        return unsubscribe

    def _publish(self, state: PublishedState) -> None:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("[PIPELINE] state listener failed")

    def cancel(self) -> bool:
        """Cancel the running pass. Its result will neither be cached nor published."""
        if not self._in_flight:
            return False
        self._generation += 1
        if self._token is not None:
            self._token.cancel()
        self._token = None
        self._in_flight = False
        logger.info("[PIPELINE] current pass cancelled")
        self._publish(PublishedState(
            pois=list(self._state.pois),
            loading=False,
            error=self._state.error,
            last_updated=self._state.last_updated,
        ))
        return True

    @staticmethod
    def _coerce(categories: Iterable) -> List[Category]:
        out: List[Category] = []
        for value in categories:
            category = coerce_category(value)
            if category not in out:
                out.append(category)
        return out

    async def load_viewport(
        self, bounds: ViewportBounds, categories: Iterable
    ) -> Optional[AggregationReport]:
        """Load POIs for a viewport.

        Returns None when nothing was done (no categories, or a pass is
        already in flight), otherwise the report of this load.

        Raises:
            UnknownCategoryError: If a category is not a member of Category
        """
        categories = self._coerce(categories)
        if not categories:
            return None
        if self._in_flight:
            logger.debug("[PIPELINE] load requested while a pass is in flight; ignoring")
            return None

        entry = self.cache.entry_for(bounds, categories)
        if entry is not None:
            logger.info(f"[CACHE] hit for {len(categories)} categories ({len(entry.pois)} POIs)")
            self._publish(PublishedState(
                pois=list(entry.pois),
                loading=False,
                error=None,
                last_updated=datetime.fromtimestamp(entry.fetched_at, timezone.utc),
            ))
            await metrics.increment("cache.hit")
            return AggregationReport(from_cache=True, poi_count=len(entry.pois))

        # _aggregate claims the in-flight flag before its first await
        return await self._aggregate(
            bounds,
            categories,
            timeout=self.viewport_timeout,
            delay_after=lambda category: self.inter_category_delay,
            max_pois=self.max_pois,
            store_in_cache=True,
        )

    async def load_full_catalog(self, categories: Optional[Iterable] = None) -> Optional[AggregationReport]:
        """Background load of all of Norway, high priority tiers first. Not cached."""
        requested = self._coerce(categories) if categories is not None else list(Category)
        if not requested:
            return None
        if self._in_flight:
            logger.debug("[PIPELINE] catalog load requested while a pass is in flight; ignoring")
            return None
        tier_order = [PriorityTier.HIGH, PriorityTier.MEDIUM, PriorityTier.LOW]
        ordered = sorted(requested, key=lambda c: tier_order.index(priority_tier(c)))
        return await self._aggregate(
            NORWAY_BOUNDS,
            ordered,
            timeout=self.background_timeout,
            delay_after=lambda category: self.tier_delays.get(priority_tier(category), 0.0),
            max_pois=None,
            store_in_cache=False,
        )

    async def _aggregate(
        self,
        bounds: ViewportBounds,
        categories: List[Category],
        timeout: float,
        delay_after: Callable[[Category], float],
        max_pois: Optional[int],
        store_in_cache: bool,
    ) -> AggregationReport:
        self._in_flight = True
        self._generation += 1
        generation = self._generation
        token = CancellationToken()
        self._token = token
        started = time.monotonic()
        report = AggregationReport()

        def superseded() -> bool:
            return token.cancelled or generation != self._generation

        try:
            self._publish(PublishedState(
                pois=list(self._state.pois),
                loading=True,
                error=None,
                last_updated=self._state.last_updated,
            ))
            if store_in_cache:
                await metrics.increment("cache.miss")
            logger.info(
                f"[PIPELINE] loading {len(categories)} categories for "
                f"{bounds.as_overpass_bbox()}: {', '.join(c.value for c in categories)}"
            )

            accumulator: List[POI] = []
            seen = set()
            if self.admin_store is not None:
                for poi in self.admin_store.get_by_categories(categories):
                    if poi.id not in seen and bounds.contains_point(poi.lat, poi.lng):
                        seen.add(poi.id)
                        accumulator.append(poi)

            stats = NormalizationStats()
            fetched: Dict[str, FetchOutcome] = {}
            malformed = 0

            for index, category in enumerate(categories):
                if superseded():
                    report.cancelled = True
                    break
                route = self.router.route(category)
                called_network = False
                failed = False

                for query in route.queries:
                    outcome = fetched.get(query.name)
                    if outcome is None:
                        outcome = await self._fetch(query, bounds, timeout, token)
                        fetched[query.name] = outcome
                        report.network_calls += outcome.attempts
                        called_network = called_network or outcome.attempts > 0
                        if isinstance(outcome.error, MalformedResponseError):
                            malformed += 1
                    if outcome.cancelled or superseded():
                        report.cancelled = True
                        break
                    if outcome.error is not None:
                        if not isinstance(outcome.error, MalformedResponseError):
                            failed = True
                        continue

                    for raw in outcome.records:
                        if not self.normalizer.matches(raw, category):
                            continue
                        poi, ok = self.normalizer.normalize(raw, category, source=query.source, stats=stats)
                        if not ok or not bounds.contains_point(poi.lat, poi.lng):
                            continue
                        if poi.id in seen:
                            continue
                        seen.add(poi.id)
                        accumulator.append(poi)

                if report.cancelled:
                    break
                if failed:
                    report.failed_categories.append(category)
                    await metrics.increment("category.failed")
                    logger.warning(f"[PIPELINE] category {category.value} failed to load")

                delay = delay_after(category)
                if called_network and index < len(categories) - 1 and delay > 0:
                    try:
                        await cancellable_sleep(delay, token=token, sleep=self._sleep)
                    except TokenCancelled:
                        report.cancelled = True
                        break

            if report.cancelled or superseded():
                report.cancelled = True
                logger.info("[PIPELINE] pass cancelled; result discarded")
                return report

            if max_pois is not None and len(accumulator) > max_pois:
                report.truncated = len(accumulator) - max_pois
                logger.warning(
                    f"[PIPELINE] {len(accumulator)} POIs exceed the limit of {max_pois}; "
                    f"dropping {report.truncated}"
                )
                accumulator = accumulator[:max_pois]

            report.rejected = stats.total_rejected + malformed
            report.error = failure_message(report.failed_categories, categories)
            report.poi_count = len(accumulator)

            # no await between the cancellation check above and the publish below
            all_failed = len(report.failed_categories) == len(categories)
            if store_in_cache and not all_failed:
                entry = self.cache.store(bounds, categories, accumulator)
                last_updated = datetime.fromtimestamp(entry.fetched_at, timezone.utc)
            else:
                if store_in_cache:
                    logger.info("[CACHE] every category failed; result not cached")
                last_updated = datetime.now(timezone.utc)

            self._publish(PublishedState(
                pois=list(accumulator),
                loading=False,
                error=report.error,
                last_updated=last_updated,
            ))

            if report.truncated:
                await metrics.increment("pipeline.truncated")
            if report.rejected:
                logger.debug(f"[PIPELINE] normalization: {stats.to_dict()}, malformed responses: {malformed}")
                await metrics.increment("normalize.rejected", report.rejected)
            elapsed_ms = (time.monotonic() - started) * 1000
            await metrics.observe_latency("pipeline.load_ms", elapsed_ms)
            logger.info(
                f"[PIPELINE] published {report.poi_count} POIs in {elapsed_ms:.0f}ms "
                f"({report.network_calls} calls, {report.rejected} rejected, "
                f"{len(report.failed_categories)} failed categories)"
            )
            return report
        finally:
            if generation == self._generation:
                self._in_flight = False
                self._token = None

    async def _fetch(self, query, bounds: ViewportBounds, timeout: float, token: CancellationToken) -> FetchOutcome:
        adapter = next((a for a in self.adapters if a.handles(query)), None)
        if adapter is None:
            logger.error(f"[PIPELINE] no adapter registered for source {query.source}")
            return FetchOutcome(error=ServiceError(
                f"No adapter for source {query.source}", source=query.source, query=query.name
            ))
        return await self.retry.execute(
            functools.partial(adapter.fetch, query, bounds, timeout=timeout, token=token),
            per_attempt_timeout=timeout,
            token=token,
            label=query.name,
        )
