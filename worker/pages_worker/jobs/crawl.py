"""CLI job crawling business pages and writing the consolidated dataset."""

import argparse
import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from pages_worker.core.accumulator import KeyedAccumulator
from pages_worker.core.config import ConfigError, CrawlInput, Settings, get_settings
from pages_worker.core.dispatcher import PhaseDispatcher
from pages_worker.core.engine import CrawlEngine
from pages_worker.core.languages import LANGUAGES
from pages_worker.core.sessions import SessionPool
from pages_worker.core.storage import StateStore, build_store
from pages_worker.core.urls import page_timeout_secs
from pages_worker.etl.export import export_records, write_jsonl
from pages_worker.vendors.browser import BrowserWorker
from pages_worker.vendors.page_scraper import PageScraper
from pages_worker.vendors.start_urls import load_start_requests

logger = logging.getLogger(__name__)


def _log_cutoffs(crawl_input: CrawlInput) -> None:
    for what, cutoff in (
        ("posts", crawl_input.post_date),
        ("comments", crawl_input.comment_date),
        ("reviews", crawl_input.review_date),
    ):
        if cutoff:
            logger.info("Getting %s from %s and newer", what, cutoff.isoformat())


def run_crawl_job(
    crawl_input: CrawlInput,
    *,
    output_path: Optional[str] = None,
    settings: Optional[Settings] = None,
    store: Optional[StateStore] = None,
    scraper: Optional[PageScraper] = None,
    browser_factory: Optional[Callable[[], Any]] = None,
) -> str:
    """Crawl every start URL, checkpoint the state and write the dataset; returns its path."""
    settings = settings or get_settings()
    started = time.monotonic()

    timeout_secs = page_timeout_secs(crawl_input.max_posts, crawl_input.max_post_comments)
    logger.info("Will use %ss timeout for page", timeout_secs)

    start_requests = load_start_requests(crawl_input.start_urls)
    if not start_requests:
        raise ConfigError("No requests were loaded from start_urls")

    logger.info("Using language %s (%s)", LANGUAGES[crawl_input.language], crawl_input.language)
    _log_cutoffs(crawl_input)

    store = store or build_store(settings)
    accumulator = KeyedAccumulator(store)
    accumulator.load()
    session_pool = SessionPool(store=store, persist_key=crawl_input.session_storage)

    dispatcher = PhaseDispatcher(accumulator, scraper or PageScraper(), crawl_input)
    proxy_url = crawl_input.proxy_url or settings.proxy_url
    engine = CrawlEngine(
        dispatcher,
        browser_factory=browser_factory
        or (
            lambda: BrowserWorker(
                headless=settings.headless,
                proxy_url=proxy_url,
                language=crawl_input.language,
                use_stealth=crawl_input.use_stealth,
            )
        ),
        session_pool=session_pool,
        max_concurrency=settings.max_concurrency,
        max_request_retries=settings.max_request_retries,
        page_timeout_secs=timeout_secs,
    )

    seeded = dispatcher.seed_requests(start_requests)
    for request in seeded:
        engine.add_request(request)
    if not seeded:
        logger.warning("No crawlable requests derived from %d start URLs", len(start_requests))

    accumulator.start_autosave(settings.checkpoint_interval_secs)
    try:
        engine.run()
    finally:
        accumulator.stop_autosave()
        accumulator.checkpoint()
        session_pool.persist()

    logger.info("Generating dataset...")
    finished_at = datetime.now(timezone.utc)
    items = export_records(accumulator.values(), finished_at)
    path = output_path or os.path.join(settings.state_dir, f"dataset-{finished_at.strftime('%Y%m%dT%H%M%SZ')}.jsonl")
    write_jsonl(items, path)

    logger.info("Done in %dm! %d of %d pages exported", round((time.monotonic() - started) / 60), len(items), len(accumulator))
    return path


def load_input(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as fh:
        try:
            return json.load(fh)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Input file {path} is not valid JSON: {exc}") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Crawl business pages into one record per page")
    parser.add_argument("--input", dest="input_path", required=True, help="Path to the crawl input JSON")
    parser.add_argument("--output", dest="output_path", help="Where to write the JSONL dataset")
    return parser


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    parser = build_parser()
    args = parser.parse_args()

    try:
        crawl_input = CrawlInput.from_dict(load_input(args.input_path))
        path = run_crawl_job(crawl_input, output_path=args.output_path)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        raise SystemExit(2) from exc
    except Exception as exc:  # pragma: no cover - CLI fallback
        logger.error("Crawl failed: %s", exc, exc_info=True)
        raise SystemExit(1) from exc
    print(path)


if __name__ == "__main__":
    main()
