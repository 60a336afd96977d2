"""Application controller: the UI state machine behind the bus timing views.

Rendering is delegated to a :class:`Renderer`; the controller only decides
what to show. Two timers run while the controller is alive: a per-service
auto-refresh (started by :meth:`BusTimingController.select_service`) and a
global favorites refresh (started by :meth:`BusTimingController.start`).
Both call into the controller from their own threads, so shared state is
guarded by a re-entrant lock and network calls happen outside of it.
"""

from collections import OrderedDict
from datetime import datetime
import enum
import logging
import math
import re
import threading
import time
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from .client import (
    CrowdInfo,
    EmptyResult,
    TransitClient,
    TransitError,
    crowd_info,
    format_clock_time,
    minutes_until,
    vehicle_type,
)
from .models import Favorite, NearbyStop, NextBus, Service, StopDirectoryEntry
from .scheduler import Debouncer, PeriodicTask
from .storage import FAVORITES_KEY, RECENT_SEARCHES_KEY, THEME_KEY, Storage

log = logging.getLogger(__name__)

REFRESH_INTERVAL_SEC = 30.0
SEARCH_DEBOUNCE_SEC = 0.3
MAX_RECENT_SEARCHES = 5
STOP_CODE_RE = re.compile(r"^\d{5}$")
API_KEY_TEST_STOP = "83139"
API_KEY_LENGTH = 36

THEMES = ("light", "dark")
DEFAULT_THEME = "dark"

SLOT_LABELS = ("Next Bus", "2nd Bus", "3rd Bus")

NO_SERVICES_MESSAGE = "No bus services found for this stop. Please check the bus stop code."

SearchResult = Union[StopDirectoryEntry, NearbyStop]


class Section(enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    RESULTS = "results"
    ERROR = "error"


class ArrivalRow(NamedTuple):
    label: str
    minutes: Optional[str]
    clock: str
    crowd: CrowdInfo
    vehicle: str
    arriving: bool


def service_sort_key(service_no: str) -> Tuple[float, str]:
    # Numeric prefix first ("961M" sits next to "961"); no prefix sorts last.
    match = re.match(r"\d+", service_no)
    number = int(match.group()) if match else math.inf
    return number, service_no


def sort_services(services: Iterable[Service]) -> List[Service]:
    return sorted(services, key=lambda s: service_sort_key(s.service_no))


def push_recent(recent: Sequence[str], stop_code: str, limit: int = MAX_RECENT_SEARCHES) -> List[str]:
    """Move ``stop_code`` to the front, without duplicates, keeping ``limit``."""
    codes = [code for code in recent if code != stop_code]
    codes.insert(0, stop_code)
    return codes[:limit]


def arrival_rows(service: Service, now: Optional[datetime] = None) -> List[ArrivalRow]:
    rows: List[ArrivalRow] = []
    for label, slot in zip(SLOT_LABELS, service.slots):
        if slot is None or slot.estimated_arrival is None:
            continue
        minutes = minutes_until(slot.estimated_arrival, now)
        rows.append(
            ArrivalRow(
                label=label,
                minutes=minutes,
                clock=format_clock_time(slot.estimated_arrival),
                crowd=crowd_info(slot.load),
                vehicle=vehicle_type(slot.type),
                arriving=minutes == "Arr",
            )
        )
    return rows


class Renderer:
    """Presentation hooks. The base class renders nothing."""

    def show_loading(self) -> None:
        pass

    def show_error(self, message: str) -> None:
        pass

    def hide_error(self) -> None:
        pass

    def show_stop_info(self, stop_code: str, is_demo: bool) -> None:
        pass

    def show_services(self, services: List[Service]) -> None:
        pass

    def show_arrivals(self, service_no: str, rows: List[ArrivalRow], updated_at: datetime) -> None:
        pass

    def show_favorites(self, favorites: List[Favorite], timings: Dict[str, List[NextBus]]) -> None:
        pass

    def show_recent_searches(self, stop_codes: List[str]) -> None:
        pass

    def show_search_results(self, results: Sequence[SearchResult]) -> None:
        pass

    def apply_theme(self, theme: str) -> None:
        pass

    def update_favorite_button(self, is_favorite: bool) -> None:
        pass


def _decline(message: str) -> bool:
    log.info("No confirmation handler, declining: %s", message)
    return False


class BusTimingController:
    def __init__(
        self,
        client: TransitClient,
        storage: Storage,
        renderer: Optional[Renderer] = None,
        confirm: Callable[[str], bool] = _decline,
        task_factory: Callable[..., PeriodicTask] = PeriodicTask,
        refresh_interval: float = REFRESH_INTERVAL_SEC,
        debounce_delay: float = SEARCH_DEBOUNCE_SEC,
    ) -> None:
        self.client = client
        self.storage = storage
        self.renderer = renderer or Renderer()
        self.confirm = confirm

        self._lock = threading.RLock()
        self.section = Section.IDLE
        self.error_message: Optional[str] = None
        self.current_stop: Optional[str] = None
        self.current_service: Optional[str] = None
        self.services: List[Service] = []
        self.is_demo = False
        self.last_query: Optional[str] = None
        self.favorites: List[Favorite] = []
        self.fav_timings: Dict[str, List[NextBus]] = {}
        self.theme = DEFAULT_THEME

        # Searches bump both counters, refreshes only the fetch counter, so a
        # late refresh never overwrites a newer search and vice versa.
        self._search_seq = 0
        self._fetch_seq = 0

        self._auto_refresh = task_factory(refresh_interval, self.refresh_arrivals, name="auto-refresh")
        self._global_refresh = task_factory(
            refresh_interval, self._refresh_favorites_tick, name="favorites-refresh"
        )
        self._debounce = Debouncer(debounce_delay, self._show_suggestions)

    # ===== lifecycle =====

    def start(self, prefetch_stops: bool = True) -> None:
        self.apply_theme(self.storage.get(THEME_KEY) or DEFAULT_THEME)
        self.renderer.show_recent_searches(self.recent_searches())
        self.load_favorites()
        if prefetch_stops:
            threading.Thread(target=self.client.list_all_stops, name="stops-prefetch", daemon=True).start()
        self._global_refresh.start()

    def shutdown(self) -> None:
        self.stop_auto_refresh()
        self._global_refresh.stop()
        self._debounce.cancel()

    # ===== stop search =====

    def _show_error(self, message: str) -> None:
        with self._lock:
            self.section = Section.ERROR
            self.error_message = message
        self.stop_auto_refresh()
        self.renderer.show_error(message)

    def search(self, stop_code: Optional[str]) -> bool:
        """Look up arrivals for a stop; returns True when results are shown."""
        code = (stop_code or "").strip()
        if not code:
            self._show_error("Please enter a bus stop code")
            return False
        if not STOP_CODE_RE.match(code):
            self._show_error("Bus stop code must be 5 digits")
            return False

        self.stop_auto_refresh()
        with self._lock:
            self.last_query = code
            self.section = Section.LOADING
            self.error_message = None
            self._search_seq += 1
            self._fetch_seq += 1
            seq = self._search_seq
        self.renderer.hide_error()
        self.renderer.show_loading()

        try:
            data = self.client.fetch_arrivals(code)
        except EmptyResult:
            if seq == self._search_seq:
                self._show_error(NO_SERVICES_MESSAGE)
            return False
        except TransitError as exc:
            log.error("Search error for %s: %s", code, exc)
            if seq == self._search_seq:
                self._show_error(str(exc) or "Failed to fetch bus arrival data")
            return False

        with self._lock:
            if seq != self._search_seq:
                log.debug("Discarding stale result for %s", code)
                return False
            found = bool(data.services)
            if found:
                self.current_stop = code
                self.current_service = None
                self.services = sort_services(data.services)
                self.is_demo = data.is_demo
                self.section = Section.RESULTS
                services = list(self.services)
        if not found:
            self._show_error(NO_SERVICES_MESSAGE)
            return False

        self._save_recent_search(code)
        self.renderer.show_stop_info(code, data.is_demo)
        self.renderer.show_services(services)
        return True

    def retry_last_action(self) -> bool:
        self.renderer.hide_error()
        if self.last_query:
            return self.search(self.last_query)
        return False

    # ===== services & arrivals =====

    def select_service(self, service_no: str) -> bool:
        with self._lock:
            self.current_service = service_no
            stop_code = self.current_stop
        shown = self.show_arrivals(service_no)
        self.renderer.update_favorite_button(self.is_favorite(stop_code, service_no))
        if shown:
            self.start_auto_refresh()
        return shown

    def show_arrivals(self, service_no: str) -> bool:
        with self._lock:
            service = next((s for s in self.services if s.service_no == service_no), None)
        if service is None:
            self._show_error("Service data not found")
            return False
        self.renderer.show_arrivals(service_no, arrival_rows(service), datetime.now())
        return True

    def refresh_arrivals(self) -> None:
        """Re-fetch the selected service; failures are logged, never shown."""
        with self._lock:
            stop_code, service_no = self.current_stop, self.current_service
            if not stop_code or not service_no:
                return
            self._fetch_seq += 1
            seq = self._fetch_seq

        try:
            data = self.client.fetch_arrivals(stop_code, service_no)
        except TransitError as exc:
            log.debug("Auto-refresh failed for %s/%s: %s", stop_code, service_no, exc)
            return

        with self._lock:
            if seq != self._fetch_seq or stop_code != self.current_stop:
                log.debug("Discarding stale refresh for %s/%s", stop_code, service_no)
                return
            if data.is_demo != self.is_demo:
                # Demo data stands in for a failed live lookup; never mix the two.
                log.debug("Ignoring refresh for %s: demo and live results differ", stop_code)
                return
            fresh = data.service(service_no)
            if fresh is None:
                return
            self.services = sort_services(
                [fresh if s.service_no == service_no else s for s in self.services]
            )
            if service_no != self.current_service:
                return
        self.show_arrivals(service_no)

    def start_auto_refresh(self) -> None:
        self._auto_refresh.stop()
        self._auto_refresh.start()

    def stop_auto_refresh(self) -> None:
        self._auto_refresh.stop()

    # ===== suggestions & nearby =====

    def handle_search_input(self, query: str) -> None:
        if not query or len(query) < 2:
            self._debounce.cancel()
            self.renderer.show_search_results([])
            return
        self._debounce(query)

    def _show_suggestions(self, query: str) -> None:
        self.renderer.show_search_results(self.client.search_stops(query))

    def search_nearby(self, lat: Optional[float], lon: Optional[float]) -> List[NearbyStop]:
        if lat is None or lon is None:
            self.renderer.show_error("Location permission denied or unavailable")
            return []
        results = self.client.nearby_stops(lat, lon)
        self.renderer.show_search_results(results)
        return results

    # ===== recent searches =====

    def recent_searches(self) -> List[str]:
        recent = self.storage.get(RECENT_SEARCHES_KEY) or []
        return [code for code in recent if isinstance(code, str)]

    def _save_recent_search(self, stop_code: str) -> None:
        recent = push_recent(self.recent_searches(), stop_code)
        self.storage.set(RECENT_SEARCHES_KEY, recent)
        self.renderer.show_recent_searches(recent)

    # ===== favorites =====

    def load_favorites(self) -> None:
        favorites: List[Favorite] = []
        for raw in self.storage.get(FAVORITES_KEY) or []:
            try:
                favorites.append(Favorite.model_validate(raw))
            except ValidationError as exc:
                log.warning("Skipping malformed favorite %r: %s", raw, exc)
        with self._lock:
            self.favorites = favorites
        self._render_favorites()
        self.refresh_favorite_timings()

    def _save_favorites(self) -> None:
        with self._lock:
            payload = [f.model_dump(by_alias=True) for f in self.favorites]
        self.storage.set(FAVORITES_KEY, payload)
        self._render_favorites()

    def _render_favorites(self) -> None:
        with self._lock:
            favorites, timings = list(self.favorites), dict(self.fav_timings)
        self.renderer.show_favorites(favorites, timings)

    def is_favorite(self, stop_code: Optional[str], service_no: Optional[str]) -> bool:
        with self._lock:
            return any(f.stop_code == stop_code and f.service_no == service_no for f in self.favorites)

    def toggle_favorite(self) -> Optional[bool]:
        """Pin or unpin the current stop/service; returns the new state."""
        with self._lock:
            stop_code, service_no = self.current_stop, self.current_service
            if not stop_code or not service_no:
                return None
            kept = [
                f for f in self.favorites if not (f.stop_code == stop_code and f.service_no == service_no)
            ]
            pinned = len(kept) == len(self.favorites)
            if pinned:
                kept.append(
                    Favorite(stop_code=stop_code, service_no=service_no, timestamp=int(time.time() * 1000))
                )
            self.favorites = kept
        self._save_favorites()
        self.renderer.update_favorite_button(pinned)
        return pinned

    def remove_favorite(self, stop_code: str, service_no: str) -> bool:
        if not self.confirm(f"Remove Favorite: Bus {service_no} at Stop {stop_code}?"):
            return False
        with self._lock:
            self.favorites = [
                f for f in self.favorites if not (f.stop_code == stop_code and f.service_no == service_no)
            ]
            self.fav_timings.pop(f"{stop_code}_{service_no}", None)
            viewing = self.current_stop == stop_code and self.current_service == service_no
        self._save_favorites()
        if viewing:
            self.renderer.update_favorite_button(False)
        return True

    def refresh_favorite_timings(self) -> None:
        with self._lock:
            if not self.favorites:
                return
            by_stop: "OrderedDict[str, List[str]]" = OrderedDict()
            for fav in self.favorites:
                by_stop.setdefault(fav.stop_code, []).append(fav.service_no)
            timings = dict(self.fav_timings)

        # One request per stop covers every favorite service there.
        for stop_code, service_nos in by_stop.items():
            try:
                data = self.client.fetch_arrivals(stop_code)
            except TransitError as exc:
                log.warning("Failed to refresh favorite timings for stop %s: %s", stop_code, exc)
                continue
            for service in data.services:
                if service.service_no in service_nos:
                    timings[f"{stop_code}_{service.service_no}"] = service.upcoming

        with self._lock:
            self.fav_timings = timings
        self._render_favorites()

    def _refresh_favorites_tick(self) -> None:
        with self._lock:
            has_favorites = bool(self.favorites)
        if has_favorites:
            self.refresh_favorite_timings()

    def open_favorite(self, stop_code: str, service_no: str) -> bool:
        if self.search(stop_code) and self.services:
            return self.select_service(service_no)
        return False

    # ===== theme =====

    def apply_theme(self, theme: str) -> None:
        if theme not in THEMES:
            theme = DEFAULT_THEME
        self.theme = theme
        self.storage.set(THEME_KEY, theme)
        self.renderer.apply_theme(theme)

    def toggle_theme(self) -> str:
        self.apply_theme("light" if self.theme == "dark" else "dark")
        return self.theme

    # ===== credential override =====

    def save_api_key(self, key: Optional[str]) -> bool:
        key = (key or "").strip()
        if not key:
            self.renderer.show_error("Please enter an API key")
            return False
        if len(key) != API_KEY_LENGTH and not self.confirm(
            f"The key length is {len(key)} characters. LTA DataMall keys are usually "
            f"{API_KEY_LENGTH} characters (UUID format). Are you sure you want to save?"
        ):
            return False

        old_key = self.client.get_api_key()
        self.client.set_api_key(key)
        try:
            data = self.client.fetch_arrivals(API_KEY_TEST_STOP)
        except TransitError as exc:
            self.client.set_api_key(old_key)
            self.renderer.show_error(f"Verification Failed: {exc}")
            return False
        if data.is_demo:
            self.client.set_api_key(old_key)
            self.renderer.show_error(
                "Verification Failed: The API key seems invalid (Server returned Demo data). "
                "Please check your key."
            )
            return False

        log.info("API key verified and saved")
        self._reload()
        return True

    def clear_api_key(self) -> bool:
        if not self.confirm("Clear your API key? The app will revert to Demo Mode."):
            return False
        self.client.set_api_key(None)
        self._reload()
        return True

    def _reload(self) -> None:
        if self.current_stop:
            self.search(self.current_stop)
        self.refresh_favorite_timings()
