# Offline asset cache: cache-first serving of the app's static files.
#
# Lifecycle mirrors an installable web worker: install() pre-populates the
# current cache and asks to take over immediately, activate() drops caches
# from older versions, fetch() answers asset requests from cache first.
# API requests are never cached.

from dataclasses import dataclass, field
import logging
from typing import Callable, Dict, List, Optional
from urllib.parse import urljoin

import requests

log = logging.getLogger(__name__)

CACHE_NAME = "sg-bus-v2"
ASSETS = (
    "./",
    "./index.html",
    "./manifest.json",
)
API_SEGMENT = "/api/"


@dataclass
class CachedResponse:
    status: int
    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)


class CacheStorage:
    """Named caches of URL -> response."""

    def __init__(self) -> None:
        self._caches: Dict[str, Dict[str, CachedResponse]] = {}

    def open(self, name: str) -> Dict[str, CachedResponse]:
        return self._caches.setdefault(name, {})

    def keys(self) -> List[str]:
        return list(self._caches)

    def delete(self, name: str) -> bool:
        return self._caches.pop(name, None) is not None

    def match(self, url: str) -> Optional[CachedResponse]:
        for cache in self._caches.values():
            if url in cache:
                return cache[url]
        return None


Fetcher = Callable[[str], CachedResponse]


class AssetFetchError(Exception):
    def __init__(self, url: str, status: Optional[int], message: str):
        super().__init__(message)
        self.url = url
        self.status = status


def network_fetcher(session: Optional[requests.Session] = None, timeout: float = 10.0) -> Fetcher:
    session = session or requests.Session()

    def fetch(url: str) -> CachedResponse:
        try:
            resp = session.get(url, timeout=timeout)
        except requests.RequestException as exc:
            raise AssetFetchError(url, None, f"fetch failed: {exc}") from exc
        return CachedResponse(
            status=resp.status_code,
            body=resp.content,
            headers={"Content-Type": resp.headers.get("Content-Type", "")},
        )

    return fetch


class AssetCacheWorker:
    def __init__(
        self,
        origin: str,
        storage: Optional[CacheStorage] = None,
        fetcher: Optional[Fetcher] = None,
        cache_name: str = CACHE_NAME,
        assets=ASSETS,
    ) -> None:
        self.origin = origin.rstrip("/") + "/"
        self.storage = storage or CacheStorage()
        self.fetcher = fetcher or network_fetcher()
        self.cache_name = cache_name
        self.assets = tuple(assets)
        self.skip_waiting = False
        self.controls_clients = False

    def url_for(self, asset: str) -> str:
        return urljoin(self.origin, asset)

    def install(self) -> None:
        """Pre-populate the current cache with every asset, all or nothing."""
        fetched: Dict[str, CachedResponse] = {}
        for asset in self.assets:
            url = self.url_for(asset)
            resp = self.fetcher(url)
            if resp.status != 200:
                raise AssetFetchError(url, resp.status, f"asset returned HTTP {resp.status}")
            fetched[url] = resp
        self.storage.open(self.cache_name).update(fetched)
        self.skip_waiting = True
        log.info("Installed %d assets into %s", len(fetched), self.cache_name)

    def activate(self) -> List[str]:
        removed = []
        for name in self.storage.keys():
            if name != self.cache_name:
                log.info("Removing old cache %s", name)
                self.storage.delete(name)
                removed.append(name)
        self.controls_clients = True
        return removed

    def fetch(self, url: str) -> Optional[CachedResponse]:
        """Cached response, else the network one; ``None`` means pass through."""
        if API_SEGMENT in url:
            return None
        cached = self.storage.match(url)
        if cached is not None:
            return cached
        return self.fetcher(url)
