"""Application configuration helpers.

Runtime settings come from the environment (optionally a ``.env`` file); the
per-crawl input comes from a JSON document validated by ``CrawlInput``.
"""

import logging
import math
import os
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any, Dict, FrozenSet, List, Optional

from dotenv import load_dotenv

from pages_worker.core.languages import LANGUAGES
from pages_worker.core.urls import parse_relative_date

logger = logging.getLogger(__name__)

COMMENTS_MODES = ("RANKED_THREADED", "RECENT_ACTIVITY", "RANKED_UNFILTERED")
STATE_STORES = ("file", "postgres")


class ConfigError(RuntimeError):
    """Raised when mandatory configuration is missing or invalid."""


@dataclass(frozen=True)
class Settings:
    max_concurrency: int = 4
    max_request_retries: int = 5
    state_store: str = "file"
    state_dir: str = "storage"
    database_url: str = ""
    checkpoint_interval_secs: int = 60
    headless: bool = True
    worker_port: int = 9000
    proxy_url: Optional[str] = None


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    max_concurrency = int(os.getenv("MAX_CONCURRENCY", "4"))
    max_request_retries = int(os.getenv("MAX_REQUEST_RETRIES", "5"))
    state_store = os.getenv("STATE_STORE", "file").strip().lower()
    state_dir = os.getenv("STATE_DIR", "storage")
    database_url = os.getenv("DATABASE_URL", "")
    checkpoint_interval_secs = int(os.getenv("CHECKPOINT_INTERVAL_SECS", "60"))
    headless = _env_bool("HEADLESS", "true")
    worker_port = int(os.getenv("WORKER_PORT", "9000"))
    proxy_url = os.getenv("PROXY_URL") or None

    if state_store not in STATE_STORES:
        raise ConfigError(f"STATE_STORE must be one of {', '.join(STATE_STORES)}, got {state_store!r}")
    if state_store == "postgres" and not database_url:
        logger.warning("DATABASE_URL is not set; postgres state store will fail.")
    if not proxy_url:
        logger.warning("PROXY_URL is not configured; requests will use the host IP.")

    return Settings(
        max_concurrency=max_concurrency,
        max_request_retries=max_request_retries,
        state_store=state_store,
        state_dir=state_dir,
        database_url=database_url,
        checkpoint_interval_secs=checkpoint_interval_secs,
        headless=headless,
        worker_port=worker_port,
        proxy_url=proxy_url,
    )


@dataclass(frozen=True)
class CrawlInput:
    start_urls: List[Dict[str, str]]
    scrape_about: bool = True
    scrape_reviews: bool = True
    scrape_posts: bool = True
    scrape_services: bool = True
    max_posts: int = 3
    max_post_comments: int = 15
    max_reviews: int = 3
    max_post_date: Optional[str] = None
    max_comment_date: Optional[str] = None
    max_review_date: Optional[str] = None
    comments_mode: str = "RANKED_THREADED"
    language: str = "en-US"
    session_storage: str = ""
    proxy_url: Optional[str] = None
    use_stealth: bool = False
    post_date: Optional[datetime] = field(default=None, compare=False)
    comment_date: Optional[datetime] = field(default=None, compare=False)
    review_date: Optional[datetime] = field(default=None, compare=False)

    @property
    def sections(self) -> FrozenSet[str]:
        enabled = set()
        if self.scrape_posts:
            enabled.add("posts")
        if self.scrape_about:
            enabled.add("about")
        if self.scrape_reviews:
            enabled.add("reviews")
        if self.scrape_services:
            enabled.add("services")
        return frozenset(enabled)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "CrawlInput":
        """Validate a raw input document and resolve its relative dates."""
        if not isinstance(payload, dict):
            raise ConfigError("Missing input")

        derived = {"post_date", "comment_date", "review_date"}
        allowed = set(cls.__dataclass_fields__) - derived
        unknown = sorted(set(payload) - allowed)
        if unknown:
            raise ConfigError(f"Unknown input fields: {', '.join(unknown)}")

        start_urls = payload.get("start_urls")
        if not isinstance(start_urls, list) or not start_urls:
            raise ConfigError('You must provide the "start_urls" input')
        normalized_urls = [_normalize_start_url(item) for item in start_urls]

        values = {key: value for key, value in payload.items() if key != "start_urls"}
        for name in ("max_posts", "max_post_comments", "max_reviews"):
            if name in values:
                values[name] = _finite_count(name, values[name])

        comments_mode = values.get("comments_mode", "RANKED_THREADED")
        if comments_mode not in COMMENTS_MODES:
            raise ConfigError(f'"comments_mode" must be one of {", ".join(COMMENTS_MODES)}')

        language = values.get("language", "en-US")
        if language not in LANGUAGES:
            raise ConfigError(f'Selected language "{language}" isn\'t supported')

        try:
            post_date = parse_relative_date(values.get("max_post_date"))
            comment_date = parse_relative_date(values.get("max_comment_date"))
            review_date = parse_relative_date(values.get("max_review_date"))
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc

        return cls(
            start_urls=normalized_urls,
            post_date=post_date,
            comment_date=comment_date,
            review_date=review_date,
            **values,
        )


def _normalize_start_url(item: Any) -> Dict[str, str]:
    if isinstance(item, str) and item.strip():
        return {"url": item.strip()}
    if isinstance(item, dict):
        url = (item.get("url") or "").strip()
        source = (item.get("requests_from_url") or "").strip()
        if source:
            return {"requests_from_url": source}
        if url:
            entry = {"url": url}
            if item.get("id"):
                entry["id"] = str(item["id"])
            return entry
    raise ConfigError(f"Invalid start URL entry: {item!r}")


def _finite_count(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ConfigError(f'You must provide a finite number for "{name}" input')
    if value < 0:
        raise ConfigError(f'"{name}" must not be negative')
    return int(value)
