import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable

from config import (
    ACCEPT_HEADER,
    CACHE_MAX_ENTRIES,
    CACHE_TTL_MS,
    FALLBACK_PROXY,
    FALLBACK_TTL_MS,
    FALLBACK_USER_AGENT,
    FETCH_WORKERS,
    MAX_RETRIES,
    REQUEST_TIMEOUT,
    RETRY_BACKOFF_STEP,
    USER_AGENT,
)
from models.preview import MetadataRecord
from services.extractor import bare_domain, extract_metadata, favicon_url
from services.fetcher import build_proxy_url, fetch_with_retry
from services.language import accept_language, select_language

logger = logging.getLogger("ogp-service.cache")

CacheKey = tuple[str, str]


@dataclass(frozen=True)
class CacheEntry:
    data: MetadataRecord
    expires_at: float


class MetadataCache:
    """
    Keyed store of preview metadata with per-entry expiry.

    Concurrent lookups for the same (language, url) share one upstream fetch.
    Failed fetches produce a degraded record that is cached for a shorter
    time, so a dead origin is hit at most once per fallback TTL.

    All state is touched only from the event loop; the blocking HTTP work runs
    on the cache's own thread pool, sized by `fetch_workers`.
    """

    def __init__(
        self,
        ttl: float = CACHE_TTL_MS / 1000,
        fallback_ttl: float = FALLBACK_TTL_MS / 1000,
        max_entries: int = CACHE_MAX_ENTRIES,
        user_agent: str | None = None,
        proxy_template: str | None = None,
        max_retries: int = MAX_RETRIES,
        timeout: float = REQUEST_TIMEOUT,
        backoff_step: float = RETRY_BACKOFF_STEP,
        fetch_workers: int = FETCH_WORKERS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.fallback_ttl = fallback_ttl
        self.max_entries = max_entries
        # Unset values come from OGP_USER_AGENT and OGP_FALLBACK_PROXY.
        self.user_agent = user_agent or USER_AGENT
        self.proxy_template = proxy_template or FALLBACK_PROXY
        self.max_retries = max_retries
        self.timeout = timeout
        self.backoff_step = backoff_step
        self.fetch_workers = fetch_workers
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=fetch_workers, thread_name_prefix="ogp-fetch")
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._in_flight: dict[CacheKey, "asyncio.Task[MetadataRecord]"] = {}

    async def get(
        self,
        url: str | None,
        lang: str | None = None,
        user_agent: str | None = None,
    ) -> MetadataRecord | None:
        """
        Return metadata for `url`, fetching it at most once per key at a time.
        Returns None only when no URL is given; every other failure ends in a
        degraded record.
        """
        if not url:
            return None

        lang_to_use = select_language(lang)
        key = (lang_to_use, url)

        cached = self._lookup(key)
        if cached is not None:
            logger.debug(f"Cache hit for {url} ({lang_to_use})")
            return cached

        task = self._in_flight.get(key)
        if task is None:
            logger.info(f"Cache miss for {url} ({lang_to_use}), fetching")
            task = asyncio.ensure_future(self._fetch(key, url, lang_to_use, user_agent))
            self._in_flight[key] = task
        # A cancelled caller must not cancel the fetch other callers are waiting on.
        return await asyncio.shield(task)

    def peek(self, url: str, lang: str | None = None) -> MetadataRecord | None:
        return self._lookup((select_language(lang), url))

    def invalidate(self, url: str, lang: str | None = None) -> bool:
        return self._entries.pop((select_language(lang), url), None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> dict:
        return {"entries": len(self._entries), "in_flight": len(self._in_flight)}

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __len__(self) -> int:
        return len(self._entries)

    def store(self, key: CacheKey, record: MetadataRecord, ttl: float) -> None:
        if self.max_entries and key not in self._entries and len(self._entries) >= self.max_entries:
            self._evict()
        self._entries[key] = CacheEntry(data=record, expires_at=self._clock() + ttl)

    def _lookup(self, key: CacheKey) -> MetadataRecord | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() < entry.expires_at:
            return entry.data
        del self._entries[key]
        return None

    def _evict(self) -> None:
        now = self._clock()
        for key in [k for k, e in self._entries.items() if e.expires_at <= now]:
            del self._entries[key]
        if len(self._entries) >= self.max_entries:
            oldest = min(self._entries, key=lambda k: self._entries[k].expires_at)
            del self._entries[oldest]

    async def _fetch(self, key: CacheKey, url: str, lang: str, user_agent: str | None) -> MetadataRecord:
        try:
            record = None
            try:
                loop = asyncio.get_running_loop()
                record = await loop.run_in_executor(self._executor, self._load, url, lang, user_agent)
            except Exception as exc:
                logger.warning(f"Metadata fetch failed for {url}: {exc}")

            if record is not None:
                self.store(key, record, self.ttl)
                return record

            logger.warning(f"Serving fallback metadata for {url}", extra={"url": url, "lang": lang})
            record = _fallback_record(url)
            self.store(key, record, self.fallback_ttl)
            return record
        finally:
            self._in_flight.pop(key, None)

    def _load(self, url: str, lang: str, user_agent: str | None) -> MetadataRecord | None:
        html = self._download(url, lang, user_agent)
        if not html:
            return None
        return MetadataRecord(**extract_metadata(html, url), url=url, is_fallback=False)

    def _download(self, url: str, lang: str, user_agent: str | None) -> str | None:
        headers = {
            "User-Agent": (user_agent or "").strip() or self.user_agent or FALLBACK_USER_AGENT,
            "Accept": ACCEPT_HEADER,
            "Accept-Language": accept_language(lang),
        }
        try:
            return self._fetch_html(url, headers)
        except Exception as exc:
            if not self.proxy_template:
                logger.warning(f"Giving up on {url}: {exc}")
                return None
            logger.info(f"Direct fetch failed for {url}, trying fallback proxy")

        try:
            return self._fetch_html(build_proxy_url(self.proxy_template, url), None)
        except Exception as exc:
            logger.warning(f"Fallback proxy failed for {url}: {exc}")
            return None

    def _fetch_html(self, url: str, headers: dict | None) -> str:
        return fetch_with_retry(
            url,
            max_retries=self.max_retries,
            headers=headers,
            timeout=self.timeout,
            backoff_step=self.backoff_step,
        )


def _fallback_record(url: str) -> MetadataRecord:
    try:
        domain = bare_domain(url)
    except ValueError:
        domain = ""
    label = domain or url
    return MetadataRecord(
        title=label,
        description=url,
        image=None,
        site_name=label,
        favicon=favicon_url(label),
        url=url,
        is_fallback=True,
    )
