#!/usr/bin/env python3
# LTA DataMall proxy for the bus timing app: keeps the AccountKey server-side.

from collections import deque
import errno
import logging
import mimetypes
import os
import re
import socket
import threading
import time
from typing import Deque, Dict, Optional, Tuple
import webbrowser

from flask import Flask, Response, jsonify, make_response, request
import requests
from werkzeug.security import safe_join
from werkzeug.serving import BaseWSGIServer, make_server

from .config import MISSING_KEY_MESSAGE, ProxySettings

log = logging.getLogger(__name__)

USER_AGENT = "SG-Bus-Timing-App/1.0"

MIME_TYPES = {
    ".html": "text/html",
    ".css": "text/css",
    ".js": "application/javascript",
    ".json": "application/json",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".ico": "image/x-icon",
}

NOT_FOUND_HTML = "<h1>404 - File Not Found</h1>"
HEX32_RE = re.compile(r"^[0-9a-fA-F]{32}$")


class MissingConfig(Exception):
    def __init__(self, message: str):
        super().__init__(message)


class PerKeyLimiter:
    def __init__(self, limit: int, window_sec: int) -> None:
        self.limit = max(1, limit)
        self.window_sec = max(1, window_sec)
        self._events: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> Tuple[bool, int]:
        now = time.monotonic()
        with self._lock:
            events = self._events.setdefault(key, deque())
            while events and events[0] <= now - self.window_sec:
                events.popleft()
            if len(events) >= self.limit:
                retry_after = int(self.window_sec - (now - events[0]))
                return False, max(1, retry_after)
            events.append(now)
            return True, 0


def mask_key(api_key: Optional[str]) -> str:
    if not api_key:
        return "None"
    if len(api_key) <= 8:
        return "*" * len(api_key)
    return f"{api_key[:4]}...{api_key[-4:]}"


def check_key_format(api_key: Optional[str]) -> bool:
    """Warn about keys that look like a UUID with its dashes stripped."""
    if api_key and HEX32_RE.match(api_key):
        log.warning(
            "API key is 32 hex characters. LTA keys are usually 36 characters "
            "(UUIDs with dashes). Did you remove the dashes?"
        )
        return False
    return True


def guess_content_type(path: str) -> str:
    ext = os.path.splitext(path)[1].lower()
    if ext in MIME_TYPES:
        return MIME_TYPES[ext]
    guessed, _ = mimetypes.guess_type(path)
    return guessed or "text/plain"


def error_response(status: int, message: str, *, retry_after: Optional[int] = None) -> Response:
    resp = jsonify({"error": message})
    resp.status_code = status
    resp.headers["Cache-Control"] = "no-store"
    if retry_after is not None:
        resp.headers["Retry-After"] = str(retry_after)
    return resp


def relay(upstream: requests.Response) -> Response:
    return Response(upstream.content, status=upstream.status_code, content_type="application/json")


def create_app(settings: ProxySettings, session: Optional[requests.Session] = None) -> Flask:
    app = Flask(__name__, static_folder=None)
    app.config["PROXY_SETTINGS"] = settings
    http = session or requests.Session()
    limiter = (
        PerKeyLimiter(settings.rate_limit_per_min, settings.rate_limit_window)
        if settings.rate_limit_per_min > 0
        else None
    )
    timeout = (settings.connect_timeout, settings.read_timeout)

    def get_client_ip() -> str:
        if settings.trust_proxy_headers:
            forwarded_for = request.headers.get("X-Forwarded-For", "")
            if forwarded_for:
                return forwarded_for.split(",")[0].strip()
        return request.remote_addr or "unknown"

    def resolve_api_key() -> Tuple[str, str]:
        # A key sent by the client overrides the server's own.
        client_key = (request.headers.get("AccountKey") or "").strip()
        if client_key:
            return client_key, "client"
        if settings.api_key:
            return settings.api_key, "server"
        raise MissingConfig(MISSING_KEY_MESSAGE)

    def forward(path: str, params: Dict[str, str], api_key: str) -> Response:
        url = f"{settings.upstream_base}{path}"
        log.info("  -> Calling LTA API: %s %s", url, params)
        try:
            upstream = http.get(
                url,
                params=params,
                timeout=timeout,
                headers={
                    "AccountKey": api_key,
                    "Accept": "application/json",
                    "User-Agent": USER_AGENT,
                },
            )
        except requests.RequestException as exc:
            log.warning("  -> LTA API error: %s", exc)
            return error_response(500, str(exc))

        log.info("  -> LTA API responded with status: %s", upstream.status_code)
        if upstream.status_code != 200:
            log.warning("  -> LTA error body: %r", upstream.text[:500])
        return relay(upstream)

    @app.before_request
    def log_and_limit() -> Optional[Response]:
        log.info("%s %s", request.method, request.path)
        if request.method == "OPTIONS":
            resp = make_response("", 200)
            resp.headers["Access-Control-Allow-Methods"] = "GET, OPTIONS"
            resp.headers["Access-Control-Allow-Headers"] = "AccountKey, Accept, Content-Type"
            return resp
        if limiter is None or not request.path.startswith("/api/"):
            return None
        allowed, retry_after = limiter.allow(get_client_ip())
        if not allowed:
            return error_response(429, "Too many requests", retry_after=retry_after)
        return None

    @app.after_request
    def add_common_headers(resp: Response) -> Response:
        resp.headers["Access-Control-Allow-Origin"] = "*"
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        return resp

    @app.route("/health")
    def health() -> Response:
        return jsonify({"status": "ok", "has_key": bool(settings.api_key)})

    @app.route("/api/arrivals")
    def arrivals() -> Response:
        stop_code = (request.args.get("stopCode") or request.args.get("BusStopCode") or "").strip()
        service_no = (request.args.get("serviceNo") or request.args.get("ServiceNo") or "").strip()

        try:
            api_key, source = resolve_api_key()
        except MissingConfig as exc:
            log.error("  -> %s", exc)
            return error_response(500, str(exc))

        log.info(
            "  -> BusStopCode: %s, ServiceNo: %s, using %s key %s",
            stop_code or "-",
            service_no or "all",
            source,
            mask_key(api_key),
        )
        check_key_format(api_key)

        if not stop_code:
            return error_response(400, "stopCode parameter required")

        params = {"BusStopCode": stop_code}
        if service_no:
            params["ServiceNo"] = service_no
        return forward("/v3/BusArrival", params, api_key)

    @app.route("/api/stops")
    def stops() -> Response:
        skip = request.args.get("skip", "0").strip() or "0"
        if not skip.isdigit():
            return error_response(400, "skip must be a non-negative integer")
        try:
            api_key, _ = resolve_api_key()
        except MissingConfig as exc:
            return error_response(500, str(exc))
        return forward("/BusStops", {"$skip": skip}, api_key)

    @app.route("/", defaults={"path": ""})
    @app.route("/<path:path>")
    def static_files(path: str) -> Response:
        relative = path or "index.html"
        target = safe_join(str(settings.static_root), relative)
        if target is None or not os.path.isfile(target):
            log.info("  -> 404 Not Found: %s", relative)
            return Response(NOT_FOUND_HTML, status=404, content_type="text/html")
        try:
            with open(target, "rb") as fh:
                body = fh.read()
        except OSError as exc:
            log.error("  -> Failed to read %s: %s", target, exc)
            return Response(f"Server Error: {exc.strerror}", status=500, content_type="text/plain")
        return Response(body, status=200, content_type=guess_content_type(target))

    return app


def find_free_port(host: str, port: int, attempts: int) -> int:
    """First port in ``port .. port + attempts - 1`` that can be bound."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    for candidate in range(port, port + max(1, attempts)):
        with socket.socket(family, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((host, candidate))
            except OSError as exc:
                if exc.errno != errno.EADDRINUSE:
                    raise
                log.warning("Port %d is already in use, trying %d", candidate, candidate + 1)
                continue
        return candidate
    raise RuntimeError(f"Could not find an available port after {attempts} attempts")


def bind_server(app: Flask, host: str, port: int, attempts: int) -> BaseWSGIServer:
    return make_server(host, find_free_port(host, port, attempts), app, threaded=True)


def public_url(host: str, port: int) -> str:
    display_host = "localhost" if host in ("127.0.0.1", "0.0.0.0", "") else host
    return f"http://{display_host}:{port}"


def main() -> None:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    settings = ProxySettings.from_env()
    if settings.api_key:
        log.info("Using server API key %s", mask_key(settings.api_key))
        check_key_format(settings.api_key)
    else:
        log.warning("LTA_API_KEY not set; arrival requests will fail unless the client sends a key")

    app = create_app(settings)
    try:
        server = bind_server(app, settings.host, settings.port, settings.port_attempts)
    except RuntimeError as exc:
        log.error("%s", exc)
        raise SystemExit(1)

    url = public_url(settings.host, server.server_port)
    log.info("SG Bus Timing server running at %s (Ctrl+C to stop)", url)
    if settings.open_browser:
        webbrowser.open(url)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        log.info("Shutting down")
    finally:
        server.server_close()


if __name__ == "__main__":
    main()
