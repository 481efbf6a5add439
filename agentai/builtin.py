"""Built-in tools shared across agents.

Groups (pass names to ``builtin_tools()`` or ``Agent(builtin_tools=[...])``):

- ``datetime``: today's date, current time, timestamps, day of week,
  time in a timezone, timezone conversion.
- ``location``: geocode a place name via the OpenStreetMap Nominatim API.
  Follow the Nominatim usage policy:
  https://operations.osmfoundation.org/policies/nominatim/
- ``web``: fetch a web page; Brave web search when an API key is available
  (``BRAVE_API_KEY``, free plan at https://api.search.brave.com/app/keys).

``datetime`` and ``location`` are the defaults; ``web`` must be requested.
"""

from __future__ import annotations

import logging
import os
from datetime import date, datetime
from typing import Any, Callable, Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from agentai.errors import AgentConfigurationError
from agentai.tools import BUILTIN_SOURCE, FunctionTool

logger = logging.getLogger(__name__)

DEFAULT_GROUPS: tuple[str, ...] = ("datetime", "location")
ALL_GROUPS: tuple[str, ...] = ("datetime", "location", "web")

NOMINATIM_URL = "https://nominatim.openstreetmap.org/search"
BRAVE_API_URL = "https://api.search.brave.com/res/v1/web/search"
BRAVE_API_KEY_ENV = "BRAVE_API_KEY"
USER_AGENT = "agentai-client"
HTTP_TIMEOUT: float = 20.0


def _http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=HTTP_TIMEOUT,
        headers={"User-Agent": USER_AGENT},
        follow_redirects=True,
    )


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone: {name}") from None


# ---------------------------------------------------------------------------
# datetime
# ---------------------------------------------------------------------------


def get_today_date() -> str:
    """Use this tool to answer questions like: "What is today's date?".

    Returns the date in YYYY-MM-DD format, in the local timezone of the system.
    """
    return date.today().isoformat()


def get_current_time() -> str:
    """Use this tool to answer questions like: "What time is it?".

    Returns the time in HH:MM:SS format, in the local timezone of the system.
    """
    return datetime.now().strftime("%H:%M:%S")


def get_current_datetime() -> str:
    """Use this tool to get the complete current date and time for precise time-stamping.

    Returns an ISO 8601 timestamp with UTC offset (e.g. "2023-10-27T10:30:00+00:00").
    """
    return datetime.now().astimezone().isoformat(timespec="seconds")


def get_day_of_week(date: str) -> str:
    """Use this tool to find the day of the week for a given date in YYYY-MM-DD format.

    For example, to answer "What day of the week was 2024-01-01?".
    """
    try:
        parsed = datetime.strptime(date, "%Y-%m-%d")
    except ValueError:
        raise ValueError(f"Invalid date {date!r}; expected YYYY-MM-DD") from None
    return parsed.strftime("%A")


def get_time_in_timezone(timezone: str) -> str:
    """Use this tool to answer questions like: "What time is it in Tokyo?".

    The timezone must be an IANA name (e.g. "America/New_York", "Asia/Tokyo").
    Returns the time in HH:MM:SS format for that zone.
    """
    return datetime.now(_zone(timezone)).strftime("%H:%M:%S")


def convert_time(source_timezone: str, time: str, target_timezone: str) -> str:
    """Use this tool to convert a time between timezones.

    For example, to answer "What is 14:00 in New York in Tokyo time?". Provide
    IANA timezone names and the time in HH:MM format; returns HH:MM.
    """
    source_tz = _zone(source_timezone)
    target_tz = _zone(target_timezone)
    try:
        parsed = datetime.strptime(time, "%H:%M").time()
    except ValueError:
        raise ValueError(f"Invalid time format for {time!r}; expected HH:MM") from None
    today_in_source = datetime.now(source_tz)
    source_dt = today_in_source.replace(
        hour=parsed.hour, minute=parsed.minute, second=0, microsecond=0,
    )
    return source_dt.astimezone(target_tz).strftime("%H:%M")


# ---------------------------------------------------------------------------
# location
# ---------------------------------------------------------------------------


async def get_location(location: str) -> str:
    """Use this tool to get the latitude and longitude of a place.

    Search by city name or a full street address (e.g. "Eiffel Tower").
    Returns the display name, latitude, and longitude.
    """
    async with _http_client() as client:
        response = await client.get(NOMINATIM_URL, params={"q": location, "format": "jsonv2"})
    if response.status_code != 200:
        raise RuntimeError(f"Location API request failed with status: {response.status_code}")
    results = response.json()
    if not results:
        raise ValueError(f"No location found for {location!r}")
    first = results[0]
    return (
        f"Location: {first['display_name']}, "
        f"Latitude: {first['lat']}, Longitude: {first['lon']}"
    )


# ---------------------------------------------------------------------------
# web
# ---------------------------------------------------------------------------


async def web_fetch(url: str) -> str:
    """Fetch the raw text content of a web page given its full URL (including https://)."""
    async with _http_client() as client:
        try:
            response = await client.get(url)
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Request to {url} failed: {exc}") from exc
    if not response.is_success:
        raise RuntimeError(f"Request to {url} failed with status: {response.status_code}")
    return response.text


def make_web_search(api_key: str) -> Callable[[str], Any]:
    """Build a Brave web search tool bound to *api_key*."""

    async def web_search(query: str) -> str:
        """Search the web for the given terms. Returns titles, descriptions and URLs of matching pages."""
        async with _http_client() as client:
            response = await client.get(
                BRAVE_API_URL,
                params={"q": query, "count": "5", "result_filter": "web"},
                headers={"X-Subscription-Token": api_key, "Accept": "application/json"},
            )
        if not response.is_success:
            raise RuntimeError(f"Web search failed with status: {response.status_code}")
        items = (response.json().get("web") or {}).get("results") or []
        results = [
            f"Title: {item.get('title', '')}\n"
            f"Description: {item.get('description', '')}\n"
            f"URL: {item.get('url', '')}"
            for item in items
        ]
        return "\n\n".join(results) if results else "No results."

    return web_search


_GROUP_FUNCS: dict[str, tuple[Callable[..., Any], ...]] = {
    "datetime": (
        get_today_date,
        get_current_time,
        get_current_datetime,
        get_day_of_week,
        get_time_in_timezone,
        convert_time,
    ),
    "location": (get_location,),
    "web": (web_fetch,),
}


def builtin_tools(
    groups: Iterable[str] | None = None,
    *,
    brave_api_key: str | None = None,
) -> list[FunctionTool]:
    """Return built-in tool handlers for the requested groups.

    Args:
        groups: Group names; None selects DEFAULT_GROUPS.
        brave_api_key: Key for web_search; falls back to BRAVE_API_KEY.
    """
    selected = list(DEFAULT_GROUPS if groups is None else groups)
    unknown = [g for g in selected if g not in ALL_GROUPS]
    if unknown:
        raise AgentConfigurationError(
            f"Unknown built-in tool groups {unknown}; available: {list(ALL_GROUPS)}"
        )

    handlers: list[FunctionTool] = []
    for group in selected:
        for fn in _GROUP_FUNCS[group]:
            handlers.append(FunctionTool.from_callable(fn, source=BUILTIN_SOURCE))
        if group == "web":
            key = brave_api_key or os.environ.get(BRAVE_API_KEY_ENV)
            if key:
                handlers.append(
                    FunctionTool.from_callable(make_web_search(key), source=BUILTIN_SOURCE)
                )
            else:
                logger.warning("web_search disabled: %s is not set", BRAVE_API_KEY_ENV)
    return handlers
