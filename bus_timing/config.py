# Runtime settings for the proxy and the client, read from env / .env.

from dataclasses import dataclass
import enum
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_UPSTREAM = "https://datamall2.mytransport.sg/ltaodataservice"
MISSING_KEY_MESSAGE = "Server misconfiguration: LTA_API_KEY not found in environment"


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class FallbackPolicy(enum.Enum):
    """When the client substitutes demo data for a failed arrivals lookup."""

    ALWAYS = "always"
    CREDENTIALS = "credentials"
    NEVER = "never"

    @classmethod
    def parse(cls, value: Optional[str], default: "FallbackPolicy") -> "FallbackPolicy":
        if not value:
            return default
        try:
            return cls(value.strip().lower())
        except ValueError:
            return default


@dataclass(frozen=True)
class ProxySettings:
    api_key: Optional[str] = None
    upstream_base: str = DEFAULT_UPSTREAM
    host: str = "127.0.0.1"
    port: int = 3000
    port_attempts: int = 10
    static_root: Path = PACKAGE_DIR / "static"
    connect_timeout: float = 3.0
    read_timeout: float = 10.0
    rate_limit_per_min: int = 120
    rate_limit_window: int = 60
    open_browser: bool = True
    trust_proxy_headers: bool = False

    @classmethod
    def from_env(cls) -> "ProxySettings":
        return cls(
            api_key=(os.getenv("LTA_API_KEY") or "").strip() or None,
            upstream_base=os.getenv("LTA_BASE_URL", DEFAULT_UPSTREAM).rstrip("/"),
            host=os.getenv("APP_HOST", "127.0.0.1"),
            port=env_int("APP_PORT", 3000),
            port_attempts=max(1, env_int("APP_PORT_ATTEMPTS", 10)),
            static_root=Path(os.getenv("STATIC_ROOT", str(PACKAGE_DIR / "static"))),
            connect_timeout=env_float("LTA_CONNECT_TIMEOUT_SEC", 3.0),
            read_timeout=env_float("LTA_READ_TIMEOUT_SEC", 10.0),
            rate_limit_per_min=env_int("API_RATE_LIMIT_PER_MIN", 120),
            rate_limit_window=env_int("RATE_LIMIT_WINDOW_SEC", 60),
            open_browser=env_bool("OPEN_BROWSER", True),
            trust_proxy_headers=env_bool("TRUST_PROXY_HEADERS", False),
        )


@dataclass(frozen=True)
class ClientSettings:
    proxy_url: str = "http://localhost:3000"
    fallback: FallbackPolicy = FallbackPolicy.ALWAYS
    timeout: float = 10.0
    stops_page_size: int = 500
    stops_cache_ttl: int = 24 * 60 * 60
    storage_path: Path = Path("~/.bus_timing.json").expanduser()

    @classmethod
    def from_env(cls) -> "ClientSettings":
        return cls(
            proxy_url=os.getenv("BUS_PROXY_URL", "http://localhost:3000").rstrip("/"),
            fallback=FallbackPolicy.parse(os.getenv("DEMO_FALLBACK"), FallbackPolicy.ALWAYS),
            timeout=env_float("BUS_CLIENT_TIMEOUT_SEC", 10.0),
            storage_path=Path(os.getenv("BUS_TIMING_STORAGE", "~/.bus_timing.json")).expanduser(),
        )
