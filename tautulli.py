"""Tautulli API access and the statistics helpers built on top of it."""

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urljoin

import requests
import urllib3
from requests.adapters import HTTPAdapter

logger = logging.getLogger(__name__)

# Tautulli installs commonly serve a self-signed certificate
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

API_PATH = "/api/v2"
REDIRECT_STATUSES = (301, 302, 307, 308)
DEFAULT_TIMEOUT = 30
SECONDS_PER_DAY = 86400
CLOCK_SKEW_SECONDS = 3600
PREVIEW_CAP = 25


class TautulliError(Exception):
    pass


class ConfigurationError(TautulliError):
    pass


class TransportError(TautulliError):
    pass


class RedirectError(TautulliError):
    pass


class HttpError(TautulliError):
    def __init__(self, status, reason, body=""):
        self.status = status
        self.reason = reason
        self.body = body
        message = f"HTTP {status} {reason}".rstrip()
        if body:
            message += f" - {body}"
        super().__init__(message)


class RemoteApiError(TautulliError):
    pass


@dataclass(frozen=True)
class RemoteConfig:
    base_url: str
    api_key: str
    host_header: Optional[str] = None
    sni_override: Optional[str] = None
    timeout: float = DEFAULT_TIMEOUT


def _first(*values):
    for value in values:
        if value not in (None, ""):
            return value
    return None


def _timeout_value(*values):
    raw = _first(*values)
    try:
        timeout = float(raw)
    except (TypeError, ValueError):
        return DEFAULT_TIMEOUT
    return timeout if timeout > 0 else DEFAULT_TIMEOUT


def resolve_config(environ, cfg) -> RemoteConfig:
    """Build a RemoteConfig from env vars, the nested ``tautulli`` block and flat keys.

    Environment wins over the nested block, which wins over the flat keys.
    Nothing is validated here; callers detect missing values.
    """
    cfg = cfg if isinstance(cfg, dict) else {}
    nested = cfg.get("tautulli") if isinstance(cfg.get("tautulli"), dict) else {}

    base_url = _first(
        environ.get("TAUTULLI_URL"),
        environ.get("TAUTULLI_BASE_URL"),
        nested.get("url"),
        nested.get("baseUrl"),
        nested.get("host"),
        cfg.get("tautulliUrl"),
        cfg.get("tautulliBaseUrl"),
    )
    api_key = _first(
        environ.get("TAUTULLI_API_KEY"),
        environ.get("TAUTULLI_APIKEY"),
        environ.get("TAUTULLI_TOKEN"),
        nested.get("apiKey"),
        nested.get("apikey"),
        nested.get("token"),
        cfg.get("tautulliApiKey"),
        cfg.get("tautulliKey"),
    )
    host_header = _first(environ.get("TAUTULLI_HOST_HEADER"), nested.get("hostHeader"))
    sni_override = _first(environ.get("TAUTULLI_SNI_HOST"), nested.get("sniHost"))

    return RemoteConfig(
        base_url=str(base_url or "").rstrip("/"),
        api_key=str(api_key or ""),
        host_header=str(host_header) if host_header else None,
        sni_override=str(sni_override) if sni_override else None,
        timeout=_timeout_value(environ.get("TAUTULLI_TIMEOUT"), nested.get("timeout")),
    )


class SNIAdapter(HTTPAdapter):
    """Adapter that presents a fixed TLS server name regardless of the URL host."""

    def __init__(self, server_hostname, **kwargs):
        self.server_hostname = server_hostname
        super().__init__(**kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs):
        pool_kwargs["server_hostname"] = self.server_hostname
        pool_kwargs["assert_hostname"] = False
        super().init_poolmanager(connections, maxsize, block=block, **pool_kwargs)


def build_session(cfg: RemoteConfig) -> requests.Session:
    session = requests.Session()
    session.verify = False
    if cfg.sni_override:
        session.mount("https://", SNIAdapter(cfg.sni_override))
    return session


def _stringify(value):
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_query(command, params, api_key):
    query = {"apikey": api_key, "cmd": command}
    for key, value in (params or {}).items():
        if value is not None:
            query[key] = _stringify(value)
    return query


def redact(text, secret):
    return text.replace(secret, "***") if secret else text


def _unwrap(response, api_key=""):
    if not 200 <= response.status_code < 300:
        body = redact((response.text or "")[:200], api_key)
        raise HttpError(response.status_code, response.reason or "", body)

    try:
        envelope = response.json()
    except ValueError as e:
        raise RemoteApiError(f"Invalid JSON from Tautulli: {e}") from e

    body = envelope.get("response") if isinstance(envelope, dict) else None
    if not isinstance(body, dict) or body.get("result") != "success":
        message = body.get("message") if isinstance(body, dict) else None
        raise RemoteApiError(message or "Tautulli API error")
    return body.get("data")


def tautulli_call(command, params, cfg: RemoteConfig):
    """Run one Tautulli API command and return the envelope's ``data``.

    A single redirect (301/302/307/308) is resolved by hand and followed
    once; the follow-up request is then allowed to redirect on its own.
    """
    if not cfg.base_url or not cfg.api_key:
        raise ConfigurationError("Tautulli URL or API key missing in config")

    url = f"{cfg.base_url}{API_PATH}"
    query = build_query(command, params, cfg.api_key)
    headers = {"Host": cfg.host_header} if cfg.host_header else {}

    session = build_session(cfg)
    try:
        response = session.get(url, params=query, headers=headers,
                               timeout=cfg.timeout, allow_redirects=False)

        if response.status_code in REDIRECT_STATUSES:
            location = response.headers.get("Location") or ""
            if not location:
                raise RedirectError(f"Redirected with no Location header (status {response.status_code})")
            redirect_url = urljoin(response.url or url, location)
            response = session.get(redirect_url, headers=headers,
                                   timeout=cfg.timeout, allow_redirects=True)

        return _unwrap(response, cfg.api_key)
    except requests.exceptions.RequestException as e:
        # urllib3 messages embed the full request URL, apikey included
        message = redact(str(e), cfg.api_key)
        logger.error("Tautulli %s -> %s failed: %s", command, url, message)
        raise TransportError(f"fetch failed: {message}") from e
    except TautulliError as e:
        logger.error("Tautulli %s -> %s failed: %s", command, url, redact(str(e), cfg.api_key))
        raise
    finally:
        session.close()


def _num(value):
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else 0
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        try:
            number = float(text)
        except ValueError:
            return 0
        if not math.isfinite(number):
            return 0
        return int(number) if number.is_integer() else number
    return 0


def _sum_rows(rows, wanted):
    total = 0
    for row in rows:
        if not isinstance(row, dict):
            continue
        for key, value in row.items():
            if str(key).lower() == wanted:
                total += _num(value)
    return total


def _find_bucket(payload, wanted):
    buckets = []
    for key in ("series", "data"):
        if isinstance(payload.get(key), list):
            buckets.extend(payload[key])
    for bucket in buckets:
        if not isinstance(bucket, dict):
            continue
        name = bucket.get("label") or bucket.get("name") or ""
        if str(name).lower() == wanted:
            return bucket
    return None


def _point_value(point):
    if point is None or isinstance(point, (bool, str)):
        return 0
    if isinstance(point, (int, float)):
        return _num(point)
    if isinstance(point, (list, tuple)):
        return _num(point[1]) if len(point) > 1 else 0
    if isinstance(point, dict):
        return _num(_first(point.get("y"), point.get("value"), point.get("count")))
    return 0


def _sum_tree(payload, wanted):
    total = 0
    stack = [payload]
    while stack:
        current = stack.pop()
        if isinstance(current, list):
            stack.extend(current)
        elif isinstance(current, dict):
            for key, value in current.items():
                if str(key).lower() == wanted:
                    total += _num(value)
                if isinstance(value, (dict, list)):
                    stack.append(value)
    return total


def sum_for_label(payload, label):
    """Total the numbers filed under ``label`` in a loosely shaped payload.

    Tautulli's graph payloads are not shaped consistently, so three readings
    are tried in order:

    * a list of rows: sum every row field named ``label``;
    * an object with ``series``/``data`` buckets: sum the points of the first
      bucket whose ``label``/``name`` matches (bare numbers, ``[x, y]`` pairs
      or objects carrying ``y``/``value``/``count``);
    * anything else, or no matching bucket: walk the whole structure and sum
      every value stored under a key named ``label``.

    The last reading is a heuristic, not a parse. Matching ignores case.
    """
    wanted = str(label).lower()
    if isinstance(payload, list):
        return _sum_rows(payload, wanted)
    if not isinstance(payload, dict):
        return 0

    bucket = _find_bucket(payload, wanted)
    if bucket is not None and isinstance(bucket.get("data"), list):
        return sum(_point_value(point) for point in bucket["data"])
    return _sum_tree(payload, wanted)


def media_type_of(item):
    return str(item.get("media_type") or item.get("type") or "").lower()


def added_at_of(item):
    raw = next((value for value in (item.get("added_at"), item.get("addedAt"), item.get("created_at"))
                 if value is not None), None)
    if raw is None:
        return 0
    if isinstance(raw, bool):
        return None
    try:
        ts = float(raw)
    except (TypeError, ValueError):
        return None
    return ts if math.isfinite(ts) else None


def _text(value):
    return str(value).strip() if value is not None else ""


def normalize_titles(item):
    media_type = media_type_of(item)
    if _text(item.get("grandparent_title")):
        return item
    if media_type == "season":
        parent = _text(item.get("parent_title"))
        if parent:
            return {**item, "grandparent_title": parent}
    elif media_type == "show":
        title = _text(item.get("title"))
        if title:
            return {**item, "grandparent_title": title}
    return item


def clamp(value, low, high):
    return max(low, min(high, value))


def recent_media(raw_items, media_type=None, window_days=7, limit=12, now=None):
    """Normalize, window, filter, sort and cap a list of recently added items."""
    window_days = clamp(window_days, 1, 90)
    limit = clamp(limit, 1, 500)
    now = int(time.time()) if now is None else now
    cutoff = now - window_days * SECONDS_PER_DAY
    wanted_type = str(media_type or "").lower()
    if wanted_type not in ("movie", "episode"):
        wanted_type = None

    rows = []
    for item in raw_items or []:
        if not isinstance(item, dict):
            continue
        item = normalize_titles(item)
        ts = added_at_of(item)
        if ts is None or ts < cutoff or ts > now + CLOCK_SKEW_SECONDS:
            continue
        if wanted_type and media_type_of(item) != wanted_type:
            continue
        rows.append((ts, item))

    # sorted() is stable with reverse=True, so equal timestamps keep input order
    rows = sorted(rows, key=lambda pair: pair[0], reverse=True)
    effective_limit = min(limit, PREVIEW_CAP) if wanted_type else limit
    return [item for _, item in rows[:effective_limit]]


def home_stats_params(days):
    return {"time_range": days, "stats_type": 0, "stats_count": 25, "grouping": 0}


def fetch_summary(cfg: RemoteConfig, days):
    """Fetch home stats and plays/duration by date together and total them per category.

    Any failing call fails the whole summary.
    """
    with ThreadPoolExecutor(max_workers=3, thread_name_prefix="tautulli-summary") as pool:
        home_future = pool.submit(tautulli_call, "get_home_stats", home_stats_params(days), cfg)
        plays_future = pool.submit(tautulli_call, "get_plays_by_date",
                                   {"time_range": days, "y_axis": "plays"}, cfg)
        duration_future = pool.submit(tautulli_call, "get_plays_by_date",
                                      {"time_range": days, "y_axis": "duration"}, cfg)
        home = home_future.result()
        plays_by_date = plays_future.result()
        duration_by_date = duration_future.result()

    movies = sum_for_label(plays_by_date, "Movies")
    episodes = sum_for_label(plays_by_date, "TV")
    movie_seconds = sum_for_label(duration_by_date, "Movies")
    tv_seconds = sum_for_label(duration_by_date, "TV")

    return {
        "home": home,
        "totals": {
            "movies": movies,
            "episodes": episodes,
            "total_plays": movies + episodes,
            "total_time_seconds": movie_seconds + tv_seconds,
        },
    }


def dedupe_users(data):
    if isinstance(data, list):
        users = data
    elif isinstance(data, dict) and isinstance(data.get("users"), list):
        users = data["users"]
    else:
        users = []

    out = []
    seen = set()
    for user in users:
        if not isinstance(user, dict):
            continue
        email = _text(user.get("email"))
        if not email:
            continue
        key = email.lower()
        if key in seen:
            continue
        seen.add(key)
        name = _text(_first(user.get("friendly_name"), user.get("username"),
                            user.get("user"), user.get("name")))
        out.append({"name": name, "email": email})
    return out


def mask_api_key(api_key):
    if not api_key:
        return None
    if len(api_key) <= 8:
        return "…"
    return f"{api_key[:4]}…{api_key[-4:]}"
