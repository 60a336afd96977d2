# Client for the arrivals proxy: live lookups with demo fallback, the
# stop directory cache, stop search, and display helpers.

from bisect import bisect_right
from datetime import datetime, timedelta, timezone, tzinfo
import logging
import math
import time
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple, Union

from pydantic import ValidationError
import requests

from .config import MISSING_KEY_MESSAGE, ClientSettings, FallbackPolicy
from .models import (
    BusArrivalResponse,
    NearbyStop,
    StopDirectoryEntry,
    StopsPage,
)
from .storage import API_KEY_KEY, STOPS_CACHE_KEY, STOPS_CACHE_TIME_KEY, Storage

log = logging.getLogger(__name__)

ARRIVALS_PATH = "/api/arrivals"
STOPS_PATH = "/api/stops"

SEARCH_MIN_CHARS = 2
SEARCH_MAX_RESULTS = 20
NEARBY_LIMIT = 10
METRES_PER_DEGREE = 111000

Timestamp = Union[datetime, str, None]


class TransitError(Exception):
    pass


class UpstreamUnavailable(TransitError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class MissingCredentials(TransitError):
    pass


class SchemaError(TransitError):
    pass


class EmptyResult(TransitError):
    pass


# ===== Demo data =====

# (service, operator, [(load, type) per slot, None for no prediction])
DEMO_SERVICES: List[Tuple[str, str, List[Optional[Tuple[str, str]]]]] = [
    ("176", "SMRT", [("SEA", "DD"), ("SDA", "DD"), ("SEA", "SD")]),
    ("30", "SBST", [("SEA", "DD"), ("LSD", "SD"), ("SEA", "DD")]),
    ("78", "TTS", [("SDA", "DD"), ("SEA", "DD"), None]),
]

# Minutes from now for slot n of service i: base + step * i.
DEMO_OFFSETS = ((2, 3), (10, 5), (20, 4))


def demo_arrivals(stop_code: str, now: Optional[datetime] = None) -> BusArrivalResponse:
    """Synthesize plausible arrivals relative to ``now``, flagged as demo."""
    now = now or datetime.now(timezone.utc)
    services: List[Dict[str, Any]] = []
    for index, (service_no, operator, slots) in enumerate(DEMO_SERVICES):
        service: Dict[str, Any] = {"ServiceNo": service_no, "Operator": operator}
        for slot_index, slot in enumerate(slots):
            name = "NextBus" if slot_index == 0 else f"NextBus{slot_index + 1}"
            if slot is None:
                service[name] = None
                continue
            base, step = DEMO_OFFSETS[slot_index]
            eta = now + timedelta(minutes=base + step * index)
            service[name] = {"EstimatedArrival": eta.isoformat(), "Load": slot[0], "Type": slot[1]}
        services.append(service)
    return BusArrivalResponse.model_validate(
        {"BusStopCode": stop_code, "Services": services, "_isDemo": True}
    )


# ===== Display helpers =====


class CrowdInfo(NamedTuple):
    css_class: str
    label: str


CROWD_LEVELS = {
    "SEA": CrowdInfo("crowd-green", "Seats"),
    "SDA": CrowdInfo("crowd-yellow", "Standing"),
    "LSD": CrowdInfo("crowd-red", "Full"),
}
CROWD_UNKNOWN = CrowdInfo("crowd-gray", "N/A")

VEHICLE_TYPES = {
    "SD": "Single Deck",
    "DD": "Double Deck",
    "BD": "Bendy",
}
VEHICLE_UNKNOWN = "Unknown"


def parse_timestamp(value: Timestamp) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        if not value.strip():
            return None
        value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.astimezone()
    return value


def minutes_until(estimated_arrival: Timestamp, now: Optional[datetime] = None) -> Optional[str]:
    arrival = parse_timestamp(estimated_arrival)
    if arrival is None:
        return None
    now = parse_timestamp(now) or datetime.now(timezone.utc)
    minutes = (arrival - now) // timedelta(minutes=1)
    if minutes <= 0:
        return "Arr"
    if minutes == 1:
        return "1 min"
    return f"{minutes} min"


def format_clock_time(estimated_arrival: Timestamp, tz: Optional[tzinfo] = None) -> str:
    """12-hour clock text such as ``3:05 pm``; ``--:--`` when absent."""
    arrival = parse_timestamp(estimated_arrival)
    if arrival is None:
        return "--:--"
    local = arrival.astimezone(tz)
    suffix = "am" if local.hour < 12 else "pm"
    return f"{local.hour % 12 or 12}:{local.minute:02d} {suffix}"


def crowd_info(load: Optional[str]) -> CrowdInfo:
    return CROWD_LEVELS.get(load or "", CROWD_UNKNOWN)


def vehicle_type(code: Optional[str]) -> str:
    return VEHICLE_TYPES.get(code or "", VEHICLE_UNKNOWN)


# ===== Stop ranking =====


def nearest_stops(
    stops: Sequence[StopDirectoryEntry],
    lat: float,
    lon: float,
    limit: int = NEARBY_LIMIT,
) -> List[NearbyStop]:
    """Closest ``limit`` stops by planar distance, nearest first.

    Keeps a sorted candidate list instead of sorting the whole directory.
    The flat-earth approximation holds because the network spans a few
    degrees near the equator, where a degree is ~111 km on both axes.
    """
    if limit <= 0:
        return []
    distances: List[float] = []
    kept: List[StopDirectoryEntry] = []
    for stop in stops:
        d_lat = stop.latitude - lat
        d_lon = stop.longitude - lon
        dist_sq = d_lat * d_lat + d_lon * d_lon
        if len(kept) < limit or dist_sq < distances[-1]:
            # Equal distances keep directory order.
            index = bisect_right(distances, dist_sq)
            distances.insert(index, dist_sq)
            kept.insert(index, stop)
            if len(kept) > limit:
                distances.pop()
                kept.pop()
    return [
        NearbyStop(
            stop=stop,
            dist_sq=dist_sq,
            distance=int(math.floor(math.sqrt(dist_sq) * METRES_PER_DEGREE + 0.5)),
        )
        for stop, dist_sq in zip(kept, distances)
    ]


def match_stops(stops: Sequence[StopDirectoryEntry], query: str) -> List[StopDirectoryEntry]:
    if not query or len(query) < SEARCH_MIN_CHARS:
        return []
    needle = query.lower()
    matches: List[StopDirectoryEntry] = []
    for stop in stops:
        if (
            needle in stop.bus_stop_code.lower()
            or needle in stop.description.lower()
            or needle in stop.road_name.lower()
        ):
            matches.append(stop)
            if len(matches) >= SEARCH_MAX_RESULTS:
                break
    return matches


# ===== Client =====


def _error_message(resp: requests.Response) -> str:
    message = f"API Error: {resp.status_code}"
    try:
        data = resp.json()
    except ValueError:
        text = (resp.text or "").strip()
        return f"Server Error: {text[:200]}" if text else message
    if isinstance(data, dict) and isinstance(data.get("error"), str):
        return data["error"]
    if isinstance(data, str) and data:
        return data
    return message


class TransitClient:
    """Talks to the arrivals proxy on behalf of the controller.

    The client owns no global state: its settings, the persisted storage and
    the HTTP session are handed in, and the only mutable credential is the
    optional ``AccountKey`` override, changed through :meth:`set_api_key`.
    """

    def __init__(
        self,
        settings: ClientSettings,
        storage: Storage,
        session: Optional[requests.Session] = None,
        clock=time.time,
    ) -> None:
        self.settings = settings
        self.storage = storage
        self.session = session or requests.Session()
        self._clock = clock
        self._stops: Optional[List[StopDirectoryEntry]] = None
        self._stops_time_ms: Optional[int] = None

    # ----- credential override -----

    def get_api_key(self) -> Optional[str]:
        return self.storage.get(API_KEY_KEY) or None

    def set_api_key(self, key: Optional[str]) -> None:
        if key:
            self.storage.set(API_KEY_KEY, key)
        else:
            self.storage.remove(API_KEY_KEY)

    def has_api_key(self) -> bool:
        return self.get_api_key() is not None

    # ----- transport -----

    def _get_json(self, path: str, params: Dict[str, Any]) -> Any:
        url = f"{self.settings.proxy_url}{path}"
        headers = {"Accept": "application/json"}
        api_key = self.get_api_key()
        if api_key:
            headers["AccountKey"] = api_key
        log.debug("Calling %s %s", url, params)
        try:
            resp = self.session.get(url, params=params, headers=headers, timeout=self.settings.timeout)
        except requests.RequestException as exc:
            raise UpstreamUnavailable(f"Request failed: {exc}") from exc

        if resp.status_code >= 400:
            message = _error_message(resp)
            if resp.status_code in (401, 403) or message == MISSING_KEY_MESSAGE:
                raise MissingCredentials(message)
            raise UpstreamUnavailable(message, resp.status_code)

        try:
            return resp.json()
        except ValueError as exc:
            raise SchemaError(f"{path} returned invalid JSON") from exc

    # ----- arrivals -----

    def request_arrivals(self, stop_code: str, service_no: Optional[str] = None) -> BusArrivalResponse:
        """Live arrivals; raises :class:`TransitError` on any failure."""
        params = {"stopCode": stop_code}
        if service_no:
            params["serviceNo"] = service_no
        data = self._get_json(ARRIVALS_PATH, params)
        try:
            arrivals = BusArrivalResponse.model_validate(data)
        except ValidationError as exc:
            raise SchemaError(f"Unexpected arrivals payload: {exc.error_count()} problem(s)") from exc
        if not arrivals.services:
            raise EmptyResult(f"No services found for stop {stop_code}")
        return arrivals

    def _falls_back(self, exc: TransitError) -> bool:
        policy = self.settings.fallback
        if policy is FallbackPolicy.ALWAYS:
            return True
        if policy is FallbackPolicy.CREDENTIALS:
            return isinstance(exc, MissingCredentials)
        return False

    def fetch_arrivals(self, stop_code: str, service_no: Optional[str] = None) -> BusArrivalResponse:
        """Arrivals for a stop, substituting demo data as the fallback policy allows."""
        try:
            return self.request_arrivals(stop_code, service_no)
        except TransitError as exc:
            if not self._falls_back(exc):
                raise
            log.info("Live arrivals unavailable for %s, using demo data: %s", stop_code, exc)
            return demo_arrivals(stop_code)

    # ----- stop directory -----

    def _cached_stops(self) -> Tuple[Optional[List[StopDirectoryEntry]], Optional[int]]:
        if self._stops is not None:
            return self._stops, self._stops_time_ms
        raw = self.storage.get(STOPS_CACHE_KEY)
        fetched_at = self.storage.get(STOPS_CACHE_TIME_KEY)
        if not raw or fetched_at is None:
            return None, None
        try:
            stops = [StopDirectoryEntry.model_validate(item) for item in raw]
            fetched_ms = int(fetched_at)
        except (ValidationError, TypeError, ValueError) as exc:
            log.warning("Discarding unreadable stop directory cache: %s", exc)
            return None, None
        self._stops, self._stops_time_ms = stops, fetched_ms
        return stops, fetched_ms

    def _fetch_stop_pages(self) -> Tuple[List[StopDirectoryEntry], bool]:
        page_size = self.settings.stops_page_size
        stops: List[StopDirectoryEntry] = []
        skip = 0
        while True:
            try:
                page = StopsPage.model_validate(self._get_json(STOPS_PATH, {"skip": skip}))
            except (TransitError, ValidationError) as exc:
                log.warning("Stop directory fetch stopped at offset %d: %s", skip, exc)
                return stops, False
            stops.extend(page.value)
            log.debug("Fetched %d stops...", len(stops))
            if len(page.value) < page_size:
                return stops, True
            skip += page_size

    def list_all_stops(self) -> List[StopDirectoryEntry]:
        """Every stop in the network, refreshed at most once per cache TTL.

        A failed refresh never replaces the stored directory: partial pages are
        returned as-is, and with nothing fetched the stale copy is served.
        """
        now_ms = int(self._clock() * 1000)
        cached, fetched_ms = self._cached_stops()
        if cached is not None and fetched_ms is not None:
            if now_ms - fetched_ms < self.settings.stops_cache_ttl * 1000:
                return cached

        log.info("Fetching all bus stops from %s", self.settings.proxy_url)
        stops, complete = self._fetch_stop_pages()
        if complete and stops:
            self._stops, self._stops_time_ms = stops, now_ms
            try:
                self.storage.set(STOPS_CACHE_KEY, [s.model_dump(by_alias=True) for s in stops])
                self.storage.set(STOPS_CACHE_TIME_KEY, now_ms)
            except OSError as exc:
                log.warning("Failed to cache stops: %s", exc)
            else:
                log.info("Cached %d bus stops", len(stops))
            return stops
        if stops:
            return stops
        return cached or []

    def search_stops(self, query: str) -> List[StopDirectoryEntry]:
        if not query or len(query) < SEARCH_MIN_CHARS:
            return []
        return match_stops(self.list_all_stops(), query)

    def nearby_stops(self, lat: float, lon: float, limit: int = NEARBY_LIMIT) -> List[NearbyStop]:
        return nearest_stops(self.list_all_stops(), lat, lon, limit)
