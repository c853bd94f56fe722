import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Dict, List, Optional, Sequence, Tuple

from scopedrop.services.cache_service import ComputeError, SingleFlightCache
from scopedrop.utils.error_monitoring import DiagnosticLog, ResilienceError
from scopedrop.utils.logging_config import log_pipeline_metrics


Operation = Callable[[int], Awaitable[Sequence[Any]]]
ResultCallback = Callable[['FetchResult'], None]


class FetchError(ResilienceError):
    """A named category's operation failed or returned malformed data"""

    def __init__(self, message: str, category: Optional[str] = None):
        super().__init__(message)
        self.category = category


class Category:
    """Home page categories as string constants (Enum-like)"""
    LATEST = "latest"
    FUNDING = "funding"
    IPO = "ipo"
    RESOURCES = "resources"


@dataclass
class CategorySpec:
    """What to fetch for one category"""
    name: str
    operation: Operation
    limit: int = 10
    primary: bool = False
    cache_key: Optional[str] = None
    cache_ttl: Optional[float] = None


@dataclass
class FetchCategory:
    """Per-run view of one category, as seen by the page"""
    name: str
    loading: bool = False
    last_result: Optional[List[Any]] = None
    error: Optional[str] = None
    fetch_time: float = 0.0


@dataclass
class FetchResult:
    """Outcome of one category fetch"""
    category: str
    items: Optional[List[Any]]
    fetch_time: float
    token: int
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def split_featured(items: Optional[Sequence[Any]]) -> Tuple[Optional[Any], List[Any]]:
    """First item is featured, the rest is the listing."""
    if not items:
        return None, []
    return items[0], list(items[1:])


@dataclass
class FetchRun:
    """All categories requested by one `fetch_all` invocation"""
    token: int
    specs: Dict[str, CategorySpec]
    categories: Dict[str, FetchCategory] = field(default_factory=dict)

    @property
    def primary(self) -> Optional[str]:
        for name, spec in self.specs.items():
            if spec.primary:
                return name
        return None

    @property
    def featured(self) -> Optional[Any]:
        primary = self.primary
        if primary is None:
            return None
        featured, _ = split_featured(self.categories[primary].last_result)
        return featured

    @property
    def done(self) -> bool:
        return not any(c.loading for c in self.categories.values())

    def listing(self, name: str) -> List[Any]:
        """Items to list for `name`; the primary category omits its featured item."""
        items = self.categories[name].last_result
        if name == self.primary:
            _, rest = split_featured(items)
            return rest
        return list(items or [])

    def results(self) -> Dict[str, Optional[List[Any]]]:
        return {name: c.last_result for name, c in self.categories.items()}


class CategorizedFetchOrchestrator:
    """
    Fetches independently named categories concurrently.

    Every category starts at once; none waits on, or is aborted by, another.
    A failing category is recorded in the diagnostic log under its own name,
    keeps whatever result it had, and still stops loading. Each invocation
    carries a request token so callers can drop results of superseded runs.
    """

    def __init__(
        self,
        diagnostics: DiagnosticLog,
        cache: Optional[SingleFlightCache] = None,
        fetch_timeout: Optional[float] = None,
        max_retries: int = 0,
        retry_delay: float = 1.0,
        stats_history: int = 1000,
    ) -> None:
        self.diagnostics = diagnostics
        self.cache = cache
        self.fetch_timeout = fetch_timeout
        self.max_retries = max(0, max_retries)
        self.retry_delay = retry_delay
        self.logger = logging.getLogger(__name__)

        self._token = 0
        # (category, fetch_time, error) per finished fetch, newest last
        self._fetch_stats: Deque[Tuple[str, float, Optional[str]]] = deque(maxlen=stats_history)

    @property
    def latest_token(self) -> int:
        return self._token

    def is_current(self, token: int) -> bool:
        return token == self._token

    def begin(self, specs: Sequence[CategorySpec]) -> FetchRun:
        """Create the run and mark every category as loading."""
        by_name: Dict[str, CategorySpec] = {}
        for spec in specs:
            if spec.name in by_name:
                raise ValueError(f"Duplicate category '{spec.name}'")
            by_name[spec.name] = spec

        self._token += 1
        run = FetchRun(token=self._token, specs=by_name)
        for name in by_name:
            run.categories[name] = FetchCategory(name=name, loading=True)
        return run

    async def fetch_all(
        self,
        specs: Sequence[CategorySpec],
        on_result: Optional[ResultCallback] = None,
    ) -> FetchRun:
        run = self.begin(specs)
        start = asyncio.get_event_loop().time()
        self.logger.info(f"Fetching {len(run.specs)} categories (request {run.token})")

        tasks = [
            asyncio.ensure_future(self._run_category(run, spec, on_result))
            for spec in run.specs.values()
        ]
        results = await asyncio.gather(*tasks)

        duration_ms = (asyncio.get_event_loop().time() - start) * 1000
        log_pipeline_metrics(
            self.logger,
            stage="fetch_all",
            input_count=len(results),
            output_count=sum(1 for r in results if r.ok),
            duration_ms=duration_ms,
            token=run.token,
            failed=[r.category for r in results if not r.ok],
        )
        return run

    async def iter_results(self, specs: Sequence[CategorySpec]) -> AsyncIterator[FetchResult]:
        """Yield each category's result as soon as it completes."""
        run = self.begin(specs)
        tasks = [
            asyncio.ensure_future(self._run_category(run, spec, None))
            for spec in run.specs.values()
        ]
        for next_done in asyncio.as_completed(tasks):
            yield await next_done

    async def refresh(self, run: FetchRun, name: str) -> FetchResult:
        """Re-fetch a single category inside an existing run."""
        spec = run.specs[name]
        run.categories[name].loading = True
        return await self._run_category(run, spec, None)

    async def _run_category(
        self,
        run: FetchRun,
        spec: CategorySpec,
        on_result: Optional[ResultCallback],
    ) -> FetchResult:
        category = run.categories[spec.name]
        category.loading = True
        loop = asyncio.get_event_loop()
        start = loop.time()
        try:
            items = await self._fetch_with_retry(spec)
        except Exception as e:
            cause = e.cause if isinstance(e, ComputeError) else e
            self.diagnostics.record(spec.name, cause)
            self.logger.warning(f"✗ Category '{spec.name}' failed: {cause}")
            category.error = str(cause)
            result = FetchResult(spec.name, None, loop.time() - start, run.token, error=str(cause))
        else:
            category.last_result = items
            category.error = None
            self.logger.info(f"✓ {spec.name} completed: {len(items)} items")
            result = FetchResult(spec.name, items, loop.time() - start, run.token)
        finally:
            category.loading = False
            category.fetch_time = loop.time() - start

        self._fetch_stats.append((result.category, float(result.fetch_time), result.error))
        if on_result is not None:
            try:
                on_result(result)
            except Exception:
                self.logger.exception(f"Result callback for '{spec.name}' failed")
        return result

    async def _fetch_with_retry(self, spec: CategorySpec) -> List[Any]:
        attempt = 0
        while True:
            try:
                if self.cache is not None and spec.cache_key:
                    return await self.cache.get_or_compute(
                        spec.cache_key, lambda: self._fetch_once(spec), spec.cache_ttl
                    )
                return await self._fetch_once(spec)
            except Exception as e:
                if attempt >= self.max_retries:
                    raise
                attempt += 1
                delay = self.retry_delay * attempt
                self.logger.info(f"Retrying '{spec.name}' in {delay:.1f}s (attempt {attempt + 1}): {e}")
                await asyncio.sleep(delay)

    async def _fetch_once(self, spec: CategorySpec) -> List[Any]:
        try:
            if self.fetch_timeout:
                items = await asyncio.wait_for(spec.operation(spec.limit), timeout=self.fetch_timeout)
            else:
                items = await spec.operation(spec.limit)
        except asyncio.TimeoutError as e:
            raise FetchError("timeout", spec.name) from e

        if items is None or isinstance(items, (str, bytes, dict)) or not isinstance(items, Sequence):
            raise FetchError(f"Malformed result: expected a sequence, got {type(items).__name__}", spec.name)
        return list(items)[:spec.limit]

    def get_fetch_statistics(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"categories": {}, "total_errors": 0}
        for name, fetch_time, error in self._fetch_stats:
            cat_stats = stats["categories"].setdefault(name, {"count": 0, "time": 0.0, "errors": 0})
            cat_stats["count"] += 1
            cat_stats["time"] += fetch_time
            if error:
                cat_stats["errors"] += 1
                stats["total_errors"] += 1
        return stats
