"""URL helpers: request classification, entity keys and section subpages."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional
from urllib.parse import parse_qs, urlparse

from pages_worker.models import SECTIONS, CrawlRequest, Label, UserData

logger = logging.getLogger(__name__)

BASE_DOMAIN = "facebook.com"
MOBILE_ORIGIN = "https://m.facebook.com"
DESKTOP_ORIGIN = "https://www.facebook.com"

SECTION_SUFFIXES = {"about", "posts", "reviews", "services", "community", "photos", "videos", "events"}
POST_MARKERS = {"posts", "photos", "videos", "permalink"}
POST_SCRIPTS = {"permalink.php", "story.php", "photo.php"}
RESERVED_PATHS = {
    "login",
    "login.php",
    "home.php",
    "help",
    "policies",
    "privacy",
    "settings",
    "watch",
    "groups",
    "events",
    "marketplace",
    "gaming",
    "hashtag",
    "sharer.php",
    "l.php",
}

MAX_TIMEOUT_MS = 0x7FFFFFFF

_RELATIVE_DATE_RE = re.compile(
    r"^(?P<amount>\d+)\s*(?P<unit>minute|hour|day|week|month|year)s?(\s+ago)?$",
    re.IGNORECASE,
)
_UNIT_DAYS = {"week": 7, "month": 30, "year": 365}


@dataclass(frozen=True)
class Subpage:
    url: str
    section: str


def _parse(url: str):
    if not url:
        return None
    parsed = urlparse(url.strip())
    if not parsed.scheme:
        parsed = urlparse(f"https://{url.strip()}")
    host = (parsed.hostname or "").lower()
    if host != BASE_DOMAIN and not host.endswith(f".{BASE_DOMAIN}"):
        return None
    return parsed


def _segments(path: str) -> List[str]:
    return [segment for segment in path.split("/") if segment]


def classify_url(url: str) -> Label:
    """Classify a URL by its path shape into listing, page, post or unknown."""
    parsed = _parse(url)
    if parsed is None:
        return Label.UNKNOWN

    segments = _segments(parsed.path)
    if not segments:
        return Label.UNKNOWN

    first = segments[0].lower()
    lowered = [segment.lower() for segment in segments]

    if first in POST_SCRIPTS:
        query = parse_qs(parsed.query)
        return Label.POST if query.get("story_fbid") or query.get("fbid") else Label.UNKNOWN
    for index, segment in enumerate(lowered[1:], start=1):
        if segment in POST_MARKERS and index + 1 < len(lowered):
            return Label.POST

    if first == "places" or first == "public":
        return Label.LISTING
    if first == "search" and lowered[1:2] == ["pages"]:
        return Label.LISTING
    if first == "pages":
        if lowered[1:2] == ["category"]:
            return Label.LISTING
        return Label.PAGE if len(segments) >= 3 else Label.UNKNOWN

    if first == "pg":
        return Label.PAGE if len(segments) >= 2 else Label.UNKNOWN
    if first == "profile.php":
        return Label.PAGE if parse_qs(parsed.query).get("id") else Label.UNKNOWN
    if first in RESERVED_PATHS or first.endswith(".php"):
        return Label.UNKNOWN
    if len(segments) == 1 or lowered[1] in SECTION_SUFFIXES:
        return Label.PAGE
    return Label.UNKNOWN


def extract_username(url: str) -> str:
    """Return the entity key of the page a URL belongs to.

    The key only depends on the page identity, so the same page reached through
    a listing, a start URL, a section or a post URL always maps to one key.
    """
    parsed = _parse(url)
    if parsed is None:
        raise ValueError(f"Not a page URL: {url}")

    segments = _segments(parsed.path)
    query = parse_qs(parsed.query)
    first = segments[0].lower() if segments else ""

    if first in POST_SCRIPTS or first == "profile.php":
        page_id = (query.get("id") or [None])[0]
        if page_id:
            return page_id.lower()
    elif first == "pg" and len(segments) >= 2:
        return segments[1].lower()
    elif first == "pages" and len(segments) >= 3 and segments[1].lower() != "category":
        return segments[2].lower()
    elif segments and first not in RESERVED_PATHS:
        return first

    raise ValueError(f"Unable to extract a page username from {url}")


def post_canonical_id(url: str) -> Optional[str]:
    """Return the stable id of a post permalink, if the URL carries one."""
    parsed = _parse(url)
    if parsed is None:
        return None
    query = parse_qs(parsed.query)
    for key in ("story_fbid", "fbid"):
        if query.get(key):
            return query[key][0]
    segments = _segments(parsed.path)
    for segment in segments[:-1]:
        if segment.lower() in POST_MARKERS:
            tail = segments[-1]
            return tail if tail.lower() not in POST_MARKERS else None
    return None


def normalize_output_page_url(url: str) -> str:
    return f"{DESKTOP_ORIGIN}/{extract_username(url)}/"


def to_mobile_url(url: str) -> str:
    parsed = _parse(url)
    if parsed is None:
        return url
    return parsed._replace(scheme="https", netloc=urlparse(MOBILE_ORIGIN).netloc).geturl()


def to_desktop_url(url: str) -> str:
    parsed = _parse(url)
    if parsed is None:
        return url
    return parsed._replace(scheme="https", netloc=urlparse(DESKTOP_ORIGIN).netloc).geturl()


def generate_subpages(url: str, sections: Iterable[str]) -> List[Subpage]:
    """Expand a page URL into one mobile subpage per enabled section, home first."""
    username = extract_username(url)
    enabled = set(sections) | {"home"}
    unknown = enabled - set(SECTIONS)
    if unknown:
        raise ValueError(f"Unknown sections: {', '.join(sorted(unknown))}")

    subpages = []
    for section in SECTIONS:
        if section not in enabled:
            continue
        suffix = "" if section == "home" else f"{section}/"
        subpages.append(Subpage(url=f"{MOBILE_ORIGIN}/{username}/{suffix}", section=section))
    return subpages


def build_section_requests(
    url: str,
    sections: Iterable[str],
    *,
    entity_id: Optional[str],
    referrer: str,
) -> List[CrawlRequest]:
    return [
        CrawlRequest(
            url=subpage.url,
            user_data=UserData(
                label=Label.PAGE,
                sub=subpage.section,
                id=entity_id,
                ref=referrer,
                use_mobile=True,
            ),
        )
        for subpage in generate_subpages(url, sections)
    ]


def parse_relative_date(value: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
    """Turn ``"3 days"``, ``"2 weeks ago"`` or an ISO date into an absolute UTC cutoff."""
    if value is None or not str(value).strip():
        return None

    text = str(value).strip()
    now = now or datetime.now(timezone.utc)

    match = _RELATIVE_DATE_RE.match(text)
    if match:
        amount = int(match.group("amount"))
        unit = match.group("unit").lower()
        if unit in _UNIT_DAYS:
            delta = timedelta(days=amount * _UNIT_DAYS[unit])
        else:
            delta = timedelta(**{f"{unit}s": amount})
        return now - delta

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"Unrecognised date value: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def page_timeout_secs(max_posts: int, max_comments: int) -> int:
    """Per-request timeout that grows with the amount of posts and comments to load."""
    load = (max_comments + max_posts) or 10
    timeout = math.floor(60 * (load * 0.01) + 0.5) + 300

    if timeout * 60000 >= MAX_TIMEOUT_MS:
        logger.warning(
            "max_posts + max_post_comments is too high, must be less than %s milliseconds in total, got %s. "
            "Loading posts and comments might never finish.",
            MAX_TIMEOUT_MS,
            timeout * 60000,
        )
        timeout = MAX_TIMEOUT_MS // 60000

    return timeout
