from datetime import datetime, timedelta, timezone

import pytest
import requests

from bus_timing.client import EmptyResult, TransitClient, UpstreamUnavailable, demo_arrivals
from bus_timing.config import ClientSettings
from bus_timing.controller import (
    MAX_RECENT_SEARCHES,
    NO_SERVICES_MESSAGE,
    BusTimingController,
    Renderer,
    Section,
    arrival_rows,
    push_recent,
    sort_services,
)
from bus_timing.models import BusArrivalResponse, Service
from bus_timing.storage import FAVORITES_KEY, RECENT_SEARCHES_KEY, THEME_KEY, MemoryStorage

from helpers import FakeSession, arrivals_payload, json_response


class ManualTask:
    """PeriodicTask stand-in; tests fire ``run()`` themselves."""

    def __init__(self, interval, callback, name="periodic"):
        self.interval = interval
        self.callback = callback
        self.name = name
        self.running = False
        self.starts = 0

    def start(self):
        self.running = True
        self.starts += 1

    def stop(self):
        self.running = False

    def run(self):
        self.callback()


class StubClient:
    def __init__(self, responses=None):
        # stop code -> BusArrivalResponse, exception, or callable(service_no)
        self.responses = responses or {}
        self.calls = []
        self.api_key = None
        self.stops = []

    def fetch_arrivals(self, stop_code, service_no=None):
        self.calls.append((stop_code, service_no))
        answer = self.responses.get(stop_code)
        if callable(answer) and not isinstance(answer, BusArrivalResponse):
            answer = answer(service_no)
        if isinstance(answer, Exception):
            raise answer
        if answer is None:
            raise EmptyResult(f"No services found for stop {stop_code}")
        return answer

    def get_api_key(self):
        return self.api_key

    def set_api_key(self, key):
        self.api_key = key or None

    def search_stops(self, query):
        return [s for s in self.stops if query in s]

    def nearby_stops(self, lat, lon, limit=10):
        return self.stops[:limit]

    def list_all_stops(self):
        return self.stops


class RecordingRenderer(Renderer):
    def __init__(self):
        self.events = []

    def __getattribute__(self, name):
        attr = object.__getattribute__(self, name)
        if name.startswith(("show_", "hide_", "apply_", "update_")):
            def record(*args):
                self.events.append((name, args))
                return attr(*args)

            return record
        return attr

    def last(self, name):
        for event, args in reversed(self.events):
            if event == name:
                return args
        return None


def live(stop_code, services):
    return BusArrivalResponse.model_validate(arrivals_payload(stop_code, services))


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def renderer():
    return RecordingRenderer()


def make_controller(client, storage, renderer, confirm=lambda message: True):
    return BusTimingController(client, storage, renderer, confirm=confirm, task_factory=ManualTask)


# ===== pure helpers =====


def test_service_sort_order():
    services = [Service(service_no=n) for n in ["961M", "961", "2", "10"]]
    assert [s.service_no for s in sort_services(services)] == ["2", "10", "961", "961M"]


def test_service_sort_puts_non_numeric_last():
    services = [Service(service_no=n) for n in ["NR2", "14e", "14", "NR1", "7"]]
    assert [s.service_no for s in sort_services(services)] == ["7", "14", "14e", "NR1", "NR2"]


def test_push_recent():
    recent = []
    for code in ["11111", "22222", "33333", "44444", "55555", "66666", "33333"]:
        recent = push_recent(recent, code)
        assert len(recent) <= MAX_RECENT_SEARCHES
        assert len(set(recent)) == len(recent)
        assert recent[0] == code
    assert recent == ["33333", "66666", "55555", "44444", "22222"]


def test_arrival_rows():
    now = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
    service = demo_arrivals("20251", now=now).services[2]

    rows = arrival_rows(service, now=now + timedelta(minutes=8))
    assert [r.label for r in rows] == ["Next Bus", "2nd Bus"]
    assert rows[0].minutes == "Arr"
    assert rows[0].arriving is True
    assert rows[0].crowd.label == "Standing"
    assert rows[0].vehicle == "Double Deck"
    assert rows[1].minutes == "12 min"
    assert rows[1].arriving is False


# ===== search =====


@pytest.mark.parametrize("code", ["", "   ", "1234", "123456", "abcde", "12a45"])
def test_search_rejects_malformed_codes(code, storage, renderer):
    client = StubClient()
    controller = make_controller(client, storage, renderer)

    assert controller.search(code) is False
    assert client.calls == []
    assert controller.section is Section.ERROR
    assert renderer.last("show_error")


def test_search_shows_sorted_services(storage, renderer):
    client = StubClient({"83139": live("83139", ["961M", "961", "2", "10"])})
    controller = make_controller(client, storage, renderer)

    assert controller.search(" 83139 ") is True
    assert controller.section is Section.RESULTS
    assert controller.current_stop == "83139"
    assert controller.is_demo is False
    services = renderer.last("show_services")[0]
    assert [s.service_no for s in services] == ["2", "10", "961", "961M"]
    assert renderer.last("show_stop_info") == ("83139", False)
    assert storage.get(RECENT_SEARCHES_KEY) == ["83139"]


def test_search_flags_demo_data(storage, renderer):
    client = StubClient({"20251": demo_arrivals("20251")})
    controller = make_controller(client, storage, renderer)

    controller.search("20251")
    assert controller.is_demo is True
    assert renderer.last("show_stop_info") == ("20251", True)


def test_search_empty_result_is_an_error(storage, renderer):
    controller = make_controller(StubClient(), storage, renderer)

    assert controller.search("99999") is False
    assert controller.section is Section.ERROR
    assert controller.error_message == NO_SERVICES_MESSAGE
    assert storage.get(RECENT_SEARCHES_KEY) is None


def test_search_error_and_retry(storage, renderer):
    client = StubClient({"83139": UpstreamUnavailable("API Error: 503", 503)})
    controller = make_controller(client, storage, renderer)

    assert controller.search("83139") is False
    assert controller.error_message == "API Error: 503"

    client.responses["83139"] = live("83139", ["15"])
    assert controller.retry_last_action() is True
    assert controller.section is Section.RESULTS
    assert client.calls == [("83139", None), ("83139", None)]


def test_recent_searches_are_deduplicated(storage, renderer):
    codes = ["11111", "22222", "33333", "44444", "55555", "66666"]
    client = StubClient({code: live(code, ["15"]) for code in codes})
    controller = make_controller(client, storage, renderer)

    for code in codes + ["22222"]:
        controller.search(code)

    assert controller.recent_searches() == ["22222", "66666", "55555", "44444", "33333"]
    assert renderer.last("show_recent_searches")[0] == controller.recent_searches()


def test_stale_search_result_is_discarded(storage, renderer):
    controller = None

    def slow_first(service_no):
        # A second search completes while the first is still in flight.
        controller.search("22222")
        return live("11111", ["1"])

    client = StubClient({"11111": slow_first, "22222": live("22222", ["2"])})
    controller = make_controller(client, storage, renderer)

    assert controller.search("11111") is False
    assert controller.current_stop == "22222"
    assert [s.service_no for s in controller.services] == ["2"]


# ===== services & refresh =====


def test_select_service_starts_auto_refresh(storage, renderer):
    client = StubClient({"83139": live("83139", ["15", "2"])})
    controller = make_controller(client, storage, renderer)
    controller.search("83139")

    assert controller.select_service("15") is True
    assert controller._auto_refresh.running
    service_no, rows, _ = renderer.last("show_arrivals")
    assert service_no == "15"
    assert [r.label for r in rows] == ["Next Bus", "2nd Bus"]
    assert renderer.last("update_favorite_button") == (False,)


def test_new_search_and_errors_cancel_auto_refresh(storage, renderer):
    client = StubClient({"83139": live("83139", ["15"])})
    controller = make_controller(client, storage, renderer)
    controller.search("83139")
    controller.select_service("15")

    controller.search("83139")
    assert not controller._auto_refresh.running

    controller.select_service("15")
    controller.search("bad")
    assert not controller._auto_refresh.running


def test_unknown_service_is_an_error(storage, renderer):
    client = StubClient({"83139": live("83139", ["15"])})
    controller = make_controller(client, storage, renderer)
    controller.search("83139")

    assert controller.select_service("999") is False
    assert controller.error_message == "Service data not found"
    assert not controller._auto_refresh.running


def test_refresh_merges_filtered_service(storage, renderer):
    client = StubClient({"83139": live("83139", ["15", "2"])})
    controller = make_controller(client, storage, renderer)
    controller.search("83139")
    controller.select_service("15")

    refreshed = live("83139", ["15"])
    client.responses["83139"] = lambda service_no: refreshed
    controller._auto_refresh.run()

    assert client.calls[-1] == ("83139", "15")
    assert [s.service_no for s in controller.services] == ["2", "15"]
    assert controller.services[1] is refreshed.services[0]


def test_refresh_failure_is_silent(storage, renderer):
    client = StubClient({"83139": live("83139", ["15"])})
    controller = make_controller(client, storage, renderer)
    controller.search("83139")
    controller.select_service("15")
    errors = len([e for e in renderer.events if e[0] == "show_error"])

    client.responses["83139"] = UpstreamUnavailable("down")
    controller.refresh_arrivals()

    assert controller.section is Section.RESULTS
    assert len([e for e in renderer.events if e[0] == "show_error"]) == errors
    assert controller._auto_refresh.running


def test_refresh_falling_back_to_demo_keeps_live_results(storage, renderer):
    upstream = {"down": False}

    def handler(url, params, headers):
        if upstream["down"]:
            raise requests.ConnectionError("connection refused")
        return json_response(200, arrivals_payload("83139", ["961", "2"]))

    client = TransitClient(ClientSettings(), storage, session=FakeSession(handler))
    controller = make_controller(client, storage, renderer)
    controller.search("83139")
    controller.select_service("961")

    upstream["down"] = True
    controller.refresh_arrivals()

    assert [s.service_no for s in controller.services] == ["2", "961"]
    assert controller.is_demo is False
    assert controller.section is Section.RESULTS
    assert controller._auto_refresh.running


def test_refresh_only_replaces_selected_service(storage, renderer):
    client = StubClient({"83139": live("83139", ["15", "2"])})
    controller = make_controller(client, storage, renderer)
    controller.search("83139")
    controller.select_service("15")
    kept = controller.services[0]

    client.responses["83139"] = lambda service_no: live("83139", ["15", "2", "7"])
    controller.refresh_arrivals()

    assert [s.service_no for s in controller.services] == ["2", "15"]
    assert controller.services[0] is kept


def test_stale_refresh_is_discarded(storage, renderer):
    controller = None

    def refresh_then_switch(service_no):
        if service_no is None:
            return live("11111", ["1"])
        controller.search("22222")
        return live("11111", ["1", "99"])

    client = StubClient({"11111": refresh_then_switch, "22222": live("22222", ["2"])})
    controller = make_controller(client, storage, renderer)
    controller.search("11111")
    controller.select_service("1")

    controller.refresh_arrivals()
    assert controller.current_stop == "22222"
    assert [s.service_no for s in controller.services] == ["2"]


def test_refresh_without_selection_does_nothing(storage, renderer):
    client = StubClient()
    controller = make_controller(client, storage, renderer)

    controller.refresh_arrivals()
    assert client.calls == []


# ===== favorites =====


def test_favorite_toggle_twice_restores_state(storage, renderer):
    client = StubClient({"83139": live("83139", ["15"])})
    controller = make_controller(client, storage, renderer)
    controller.search("83139")
    controller.select_service("15")

    assert controller.toggle_favorite() is True
    saved = storage.get(FAVORITES_KEY)
    assert len(saved) == 1
    assert saved[0]["stopCode"] == "83139"
    assert saved[0]["serviceNo"] == "15"
    assert saved[0]["timestamp"] > 0
    assert controller.is_favorite("83139", "15")

    assert controller.toggle_favorite() is False
    assert storage.get(FAVORITES_KEY) == []
    assert not controller.is_favorite("83139", "15")


def test_toggle_without_selection(storage, renderer):
    controller = make_controller(StubClient(), storage, renderer)
    assert controller.toggle_favorite() is None


def test_remove_favorite_requires_confirmation(renderer):
    storage = MemoryStorage(
        {FAVORITES_KEY: [{"stopCode": "83139", "serviceNo": "15", "timestamp": 1}]}
    )
    answers = [False, True]
    prompts = []

    def confirm(message):
        prompts.append(message)
        return answers.pop(0)

    controller = make_controller(StubClient(), storage, renderer, confirm=confirm)
    controller.load_favorites()

    assert controller.remove_favorite("83139", "15") is False
    assert controller.is_favorite("83139", "15")
    assert controller.remove_favorite("83139", "15") is True
    assert not controller.is_favorite("83139", "15")
    assert storage.get(FAVORITES_KEY) == []
    assert prompts[0] == "Remove Favorite: Bus 15 at Stop 83139?"


def test_default_confirm_declines(storage, renderer):
    storage.set(FAVORITES_KEY, [{"stopCode": "83139", "serviceNo": "15", "timestamp": 1}])
    controller = BusTimingController(StubClient(), storage, renderer, task_factory=ManualTask)
    controller.load_favorites()

    assert controller.remove_favorite("83139", "15") is False
    assert controller.is_favorite("83139", "15")


def test_refresh_favorites_groups_by_stop(renderer):
    storage = MemoryStorage(
        {
            FAVORITES_KEY: [
                {"stopCode": "83139", "serviceNo": "15", "timestamp": 1},
                {"stopCode": "83139", "serviceNo": "2", "timestamp": 2},
                {"stopCode": "20251", "serviceNo": "176", "timestamp": 3},
                {"bogus": True},
            ]
        }
    )
    client = StubClient(
        {
            "83139": live("83139", ["15", "2", "7"]),
            "20251": UpstreamUnavailable("down"),
        }
    )
    controller = make_controller(client, storage, renderer)
    controller.load_favorites()

    assert client.calls == [("83139", None), ("20251", None)]
    assert len(controller.favorites) == 3
    assert set(controller.fav_timings) == {"83139_15", "83139_2"}
    assert len(controller.fav_timings["83139_15"]) == 2
    favorites, timings = renderer.last("show_favorites")
    assert len(favorites) == 3
    assert "83139_15" in timings


def test_global_refresh_runs_only_with_favorites(storage, renderer):
    client = StubClient({"83139": live("83139", ["15"])})
    controller = make_controller(client, storage, renderer)
    controller.start(prefetch_stops=False)
    assert controller._global_refresh.running

    controller._global_refresh.run()
    assert client.calls == []

    controller.search("83139")
    controller.select_service("15")
    controller.toggle_favorite()
    controller._global_refresh.run()
    assert client.calls[-1] == ("83139", None)

    controller.shutdown()
    assert not controller._global_refresh.running
    assert not controller._auto_refresh.running


def test_open_favorite(storage, renderer):
    client = StubClient({"83139": live("83139", ["15", "2"])})
    controller = make_controller(client, storage, renderer)

    assert controller.open_favorite("83139", "2") is True
    assert controller.current_stop == "83139"
    assert controller.current_service == "2"


# ===== theme =====


def test_theme_toggle_persists(storage, renderer):
    controller = make_controller(StubClient(), storage, renderer)
    controller.start(prefetch_stops=False)
    assert controller.theme == "dark"

    assert controller.toggle_theme() == "light"
    assert storage.get(THEME_KEY) == "light"
    assert renderer.last("apply_theme") == ("light",)
    assert controller.toggle_theme() == "dark"


def test_invalid_stored_theme_falls_back(renderer):
    storage = MemoryStorage({THEME_KEY: "neon"})
    controller = make_controller(StubClient(), storage, renderer)
    controller.start(prefetch_stops=False)
    assert controller.theme == "dark"


# ===== suggestions & nearby =====


def test_short_input_clears_suggestions(storage, renderer):
    controller = make_controller(StubClient(), storage, renderer)

    controller.handle_search_input("a")
    assert renderer.last("show_search_results") == ([],)
    assert not controller._debounce.pending


def test_input_is_debounced(storage, renderer):
    controller = make_controller(StubClient(), storage, renderer)

    controller.handle_search_input("bedok")
    assert controller._debounce.pending
    controller.shutdown()
    assert not controller._debounce.pending


def test_search_nearby(storage, renderer):
    client = StubClient()
    client.stops = ["83139", "20251"]
    controller = make_controller(client, storage, renderer)

    assert controller.search_nearby(1.3, 103.8) == ["83139", "20251"]
    assert renderer.last("show_search_results") == (["83139", "20251"],)

    assert controller.search_nearby(None, None) == []
    assert renderer.last("show_error") == ("Location permission denied or unavailable",)


# ===== credential override =====

VALID_KEY = "11111111-2222-3333-4444-555555555555"


def test_save_api_key_rejects_demo_result(storage, renderer):
    client = StubClient({"83139": demo_arrivals("83139")})
    client.api_key = "old"
    controller = make_controller(client, storage, renderer)

    assert controller.save_api_key(VALID_KEY) is False
    assert client.api_key == "old"
    assert "Verification Failed" in renderer.last("show_error")[0]


def test_save_api_key_accepts_live_result(storage, renderer):
    client = StubClient({"83139": live("83139", ["15"])})
    controller = make_controller(client, storage, renderer)

    assert controller.save_api_key(f"  {VALID_KEY} ") is True
    assert client.api_key == VALID_KEY


def test_save_api_key_validation(storage, renderer):
    client = StubClient({"83139": live("83139", ["15"])})
    controller = make_controller(client, storage, renderer, confirm=lambda message: False)

    assert controller.save_api_key("   ") is False
    assert controller.save_api_key("short") is False
    assert client.calls == []


def test_clear_api_key(storage, renderer):
    client = StubClient({"83139": live("83139", ["15"])})
    client.api_key = VALID_KEY
    controller = make_controller(client, storage, renderer)
    controller.search("83139")

    assert controller.clear_api_key() is True
    assert client.api_key is None
    assert client.calls[-1] == ("83139", None)
