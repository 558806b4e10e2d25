"""
Remote lookups: the Steam store name of an app and the release date of a build
from SteamDB's patch-notes feed. Both are best effort; failures come back as None.
"""

import logging
import re
import threading
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Dict, Optional

import requests

LOGGER = logging.getLogger(__name__)

STORE_APPDETAILS_URL = "https://store.steampowered.com/api/appdetails"
PATCHNOTES_RSS_URL = "https://steamdb.info/api/PatchnotesRSS/"
DEFAULT_USER_AGENT = "DepotPacker/1.0"

ITEM_RE = re.compile(r"<item>([\s\S]*?)</item>")
TITLE_RE = re.compile(r"<title>([^<]+)</title>")
PUBDATE_RE = re.compile(r"<pubDate>([^<]+)</pubDate>")
TITLE_BUILD_RE = re.compile(r"Build\s+(\d+)")


def fallback_app_name(app_id: str) -> str:
    return f"app_{app_id}"


def parse_rfc2822(value: str) -> Optional[datetime]:
    try:
        parsed = parsedate_to_datetime(value.strip())
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_patchnotes_rss(xml: str, build_id: Optional[str] = None) -> Optional[datetime]:
    """
    Release date of `build_id` from a patch-notes RSS document. Items whose title
    names no build match any target. When the target is not in the feed the most
    recent item is used instead.
    """
    for item in ITEM_RE.finditer(xml):
        body = item.group(1)
        title = TITLE_RE.search(body)
        pub_date = PUBDATE_RE.search(body)
        if not title or not pub_date:
            continue

        item_build = TITLE_BUILD_RE.search(title.group(1))
        if build_id is not None and item_build and item_build.group(1) != build_id:
            continue

        parsed = parse_rfc2822(pub_date.group(1))
        if parsed is None:
            LOGGER.debug("Skipping feed item with unparseable date: %s", pub_date.group(1))
            continue
        LOGGER.debug(
            "Feed build %s published %s",
            item_build.group(1) if item_build else "unknown", parsed.isoformat(),
        )
        return parsed

    if build_id is not None:
        LOGGER.debug("Build %s not in feed, falling back to latest", build_id)
        return parse_patchnotes_rss(xml, None)
    return None


class SteamLookups:
    """HTTP lookups sharing one session and per-process caches."""

    def __init__(self, user_agent: str = DEFAULT_USER_AGENT, timeout: float = 15.0,
                 session: Optional[requests.Session] = None):
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": user_agent})
        self.timeout = timeout
        # These caches avoid looking up the same AppID multiple times per session.
        self.app_name_cache: Dict[str, str] = {}
        self.build_date_cache: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def fetch_app_name(self, app_id: str) -> Optional[str]:
        """Store name for `app_id`, or None when the store has nothing usable."""
        with self._lock:
            if app_id in self.app_name_cache:
                return self.app_name_cache[app_id]

        try:
            response = self.session.get(
                STORE_APPDETAILS_URL, params={"appids": app_id}, timeout=self.timeout
            )
            response.raise_for_status()
            payload = response.json()
        except requests.exceptions.RequestException as e:
            LOGGER.warning("Steam store lookup failed for %s: %s", app_id, e)
            return None
        except ValueError as e:
            LOGGER.warning("Steam store returned invalid JSON for %s: %s", app_id, e)
            return None

        entry = payload.get(str(app_id)) if isinstance(payload, dict) else None
        if not entry or not entry.get("success"):
            LOGGER.warning("Steam store has no data for app %s", app_id)
            return None
        name = (entry.get("data") or {}).get("name")
        if not name:
            return None

        with self._lock:
            self.app_name_cache[app_id] = name
        return name

    def app_name_or_fallback(self, app_id: str) -> str:
        return self.fetch_app_name(app_id) or fallback_app_name(app_id)

    def fetch_build_date(self, app_id: str, build_id: Optional[str] = None) -> Optional[datetime]:
        """Release date of a build (or of the latest build) from the patch-notes feed."""
        cache_key = f"{app_id}:{build_id or 'latest'}"
        with self._lock:
            if cache_key in self.build_date_cache:
                return self.build_date_cache[cache_key]

        try:
            response = self.session.get(
                PATCHNOTES_RSS_URL, params={"appid": app_id}, timeout=self.timeout
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            LOGGER.warning("Patch-notes lookup failed for %s: %s", app_id, e)
            return None

        build_date = parse_patchnotes_rss(response.text, build_id)
        if build_date is None:
            LOGGER.info("No builds found in patch-notes feed for %s", app_id)
            return None

        with self._lock:
            self.build_date_cache[cache_key] = build_date
        return build_date

    def clear_caches(self) -> None:
        with self._lock:
            self.app_name_cache.clear()
            self.build_date_cache.clear()
