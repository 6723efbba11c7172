"""Phase dispatcher routing a fetched page to the merge behaviour of its section."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from pages_worker.core.accumulator import KeyedAccumulator
from pages_worker.core.config import CrawlInput
from pages_worker.core.errors import (
    NAMESPACE_CAPTCHA,
    NAMESPACE_HANDLE_PAGE,
    NAMESPACE_MOBILE_RENDER,
    NAMESPACE_NOT_FOUND,
    InfoError,
)
from pages_worker.core.policy import Escalation, escalation_for
from pages_worker.core.urls import (
    build_section_requests,
    classify_url,
    extract_username,
    normalize_output_page_url,
    post_canonical_id,
    to_desktop_url,
)
from pages_worker.etl.merge import (
    merge_fields,
    merge_home,
    merge_identity,
    merge_post,
    merge_reviews,
    merge_services,
)
from pages_worker.models import CrawlRequest, Label, PageRecord, UserData

logger = logging.getLogger(__name__)

CSS_SELECTORS = {
    "mobile_captcha": 'form[action*="captcha"], #captcha_form',
    "desktop_captcha": '#captcha, form[action*="/checkpoint/"]',
    "mobile_meta": 'meta[name="viewport"]',
    "mobile_body_class": "body.touch",
}
MOBILE_MARKER_TIMEOUT_MS = 3000

Handler = Callable[[CrawlRequest, object, List[CrawlRequest]], None]


@dataclass(frozen=True)
class PageSnapshot:
    """Static copy of a rendered page that can be parsed from any thread."""

    url: str
    html: str

    def content(self) -> str:
        return self.html


@dataclass
class DispatchOutcome:
    request: CrawlRequest
    ok: bool = True
    error: Optional[BaseException] = None
    escalation: Optional[Escalation] = None
    enqueued: List[CrawlRequest] = field(default_factory=list)


class PhaseDispatcher:
    """Runs the page checks and the section handler for one fetched request.

    Handlers never raise to the caller: the outcome carries the error and the
    escalation decided for it, and the engine owns retries and identity actions.
    """

    def __init__(self, accumulator: KeyedAccumulator, scraper, crawl_input: CrawlInput) -> None:
        self.accumulator = accumulator
        self.scraper = scraper
        self.crawl_input = crawl_input
        self._routes: Dict[Tuple[Label, Optional[str]], Handler] = {
            (Label.LISTING, None): self._handle_listing,
            (Label.PAGE, "home"): self._handle_home,
            (Label.PAGE, "about"): self._handle_about,
            (Label.PAGE, "services"): self._handle_services,
            (Label.PAGE, "reviews"): self._handle_reviews,
            (Label.PAGE, "posts"): self._handle_posts,
            (Label.POST, None): self._handle_post,
        }

    def dispatch(self, request: CrawlRequest, page) -> DispatchOutcome:
        user_data = request.user_data
        logger.info("Visiting page %s - %s - %s", request.url, user_data.label, user_data.sub)
        enqueued: List[CrawlRequest] = []
        try:
            self.check_preconditions(request, page)
            self._route(request)(request, page, enqueued)
        except Exception as exc:  # noqa: BLE001
            logger.debug("%s %s", exc, {"url": request.url, "userData": request.to_payload()["userData"]})
            return DispatchOutcome(request, ok=False, error=exc, escalation=escalation_for(exc), enqueued=enqueued)

        logger.debug("Done with page %s", request.url)
        return DispatchOutcome(request, enqueued=enqueued)

    def _route(self, request: CrawlRequest) -> Handler:
        label = request.user_data.label
        sub = request.user_data.sub if label is Label.PAGE else None
        handler = self._routes.get((label, sub))
        if handler is None:
            raise InfoError(
                f"Invalid label/section found {label}/{request.user_data.sub}",
                namespace=NAMESPACE_HANDLE_PAGE,
                url=request.url,
                user_data=request.to_payload()["userData"],
            )
        return handler

    def check_preconditions(self, request: CrawlRequest, page) -> None:
        user_data = request.user_data
        context = {"url": request.url, "user_data": request.to_payload()["userData"]}

        if user_data.use_mobile:
            if page.has_selector(CSS_SELECTORS["mobile_captcha"]):
                raise InfoError("Mobile captcha found", namespace=NAMESPACE_CAPTCHA, **context)

            # The interactive mobile layout sometimes takes a moment to appear. A zero
            # timeout disables the wait in Playwright, so always pass at least 1 ms.
            deadline = time.monotonic() + MOBILE_MARKER_TIMEOUT_MS / 1000
            for marker in ("mobile_meta", "mobile_body_class"):
                remaining_ms = max(1, int((deadline - time.monotonic()) * 1000))
                if not page.wait_for_selector(CSS_SELECTORS[marker], remaining_ms):
                    raise InfoError(
                        "An unexpected page layout was returned by the server. This request will be retried shortly.",
                        namespace=NAMESPACE_MOBILE_RENDER,
                        **context,
                    )
        elif page.has_selector(CSS_SELECTORS["desktop_captcha"]):
            raise InfoError("Desktop captcha found", namespace=NAMESPACE_CAPTCHA, **context)

        if user_data.label is not Label.LISTING and self.scraper.is_not_found_page(page):
            request.no_retry = True
            raise InfoError(
                "Content not found. This either means the page doesn't exist, or the section itself "
                "doesn't exist (about, reviews, services)",
                namespace=NAMESPACE_NOT_FOUND,
                **context,
            )

    # ---------- Seeding ----------

    def init_subpage(self, request: CrawlRequest) -> CrawlRequest:
        """Initialise the page record for a home request; every subpage is then enqueued."""
        if request.user_data.sub == "home":
            key = extract_username(request.url)
            page_url = normalize_output_page_url(request.url)
            self.accumulator.append(
                key,
                lambda record: merge_identity(
                    record,
                    page_url=page_url,
                    url=request.url,
                    ref=request.user_data.ref,
                    external_id=request.user_data.id,
                ),
            )
        return request

    def expand_page(self, url: str, *, entity_id: Optional[str], referrer: str) -> List[CrawlRequest]:
        requests_ = build_section_requests(
            url,
            self.crawl_input.sections,
            entity_id=entity_id,
            referrer=referrer,
        )
        return [self.init_subpage(request) for request in requests_]

    def seed_requests(self, start_requests: Iterable[CrawlRequest]) -> List[CrawlRequest]:
        """Turn start URLs into the first batch of section and listing requests."""
        seeded: List[CrawlRequest] = []
        for request in start_requests:
            try:
                label = classify_url(request.url)
                if label is Label.PAGE:
                    seeded.extend(self.expand_page(request.url, entity_id=request.user_data.id, referrer=request.url))
                elif label is Label.LISTING:
                    seeded.append(
                        CrawlRequest(
                            url=request.url,
                            user_data=UserData(label=Label.LISTING, id=request.user_data.id, use_mobile=False),
                        )
                    )
                else:
                    logger.warning("Skipping start URL %s: not a page or listing URL (%s)", request.url, label.value)
            except InfoError as exc:
                logger.warning("%s %s", exc.message, exc.to_dict())
        return seeded

    # ---------- Handlers ----------

    def _handle_listing(self, request: CrawlRequest, page, enqueued: List[CrawlRequest]) -> None:
        start = time.monotonic()
        page_urls = self.scraper.get_pages_from_listing(page)
        for url in page_urls:
            enqueued.extend(self.expand_page(url, entity_id=request.user_data.id, referrer=request.url))
        logger.info("Got %d pages from listing in %.1fs", len(page_urls), time.monotonic() - start)

    def _handle_home(self, request: CrawlRequest, page, enqueued: List[CrawlRequest]) -> None:
        key = extract_username(request.url)

        def merge(record: PageRecord) -> PageRecord:
            home = self.scraper.get_page_info(page)
            fields_fragment = self.scraper.get_field_infos(page)
            record = merge_identity(
                record,
                page_url=normalize_output_page_url(request.url),
                url=request.url,
                ref=request.user_data.ref,
            )
            record = merge_home(record, home, label=request.user_data.label.value, external_id=request.user_data.id)
            return merge_fields(record, fields_fragment)

        self.accumulator.append(key, merge)

    def _handle_about(self, request: CrawlRequest, page, enqueued: List[CrawlRequest]) -> None:
        key = extract_username(request.url)
        self.accumulator.append(key, lambda record: merge_fields(record, self.scraper.get_field_infos(page)))

    def _handle_services(self, request: CrawlRequest, page, enqueued: List[CrawlRequest]) -> None:
        key = extract_username(request.url)
        try:
            services = self.scraper.get_services(page)
            if services:
                self.accumulator.append(key, lambda record: merge_services(record, services))
        except Exception as exc:  # noqa: BLE001
            # Not every page has services.
            logger.debug("No services for %s: %s", key, exc)

    def _handle_reviews(self, request: CrawlRequest, page, enqueued: List[CrawlRequest]) -> None:
        key = extract_username(request.url)
        try:
            reviews = self.scraper.get_reviews(
                page,
                max_reviews=self.crawl_input.max_reviews,
                min_date=self.crawl_input.review_date,
            )
            if reviews:
                self.accumulator.append(key, lambda record: merge_reviews(record, reviews))
        except Exception as exc:  # noqa: BLE001
            # Not every page has reviews.
            logger.debug("No reviews for %s: %s", key, exc)

    def _handle_posts(self, request: CrawlRequest, page, enqueued: List[CrawlRequest]) -> None:
        key = extract_username(request.url)
        post_urls = self.scraper.get_post_urls(
            page,
            max_posts=self.crawl_input.max_posts,
            min_date=self.crawl_input.post_date,
        )
        for post_url in post_urls:
            enqueued.append(
                CrawlRequest(
                    url=to_desktop_url(post_url),
                    user_data=UserData(
                        label=Label.POST,
                        id=request.user_data.id,
                        ref=request.url,
                        username=key,
                        canonical=post_canonical_id(post_url),
                        use_mobile=False,
                    ),
                )
            )
        logger.info("Enqueued %d posts for %s", len(post_urls), key)

    def _handle_post(self, request: CrawlRequest, page, enqueued: List[CrawlRequest]) -> None:
        started = time.monotonic()
        logger.debug("Started processing post %s", request.url)

        # Post content only renders on the desktop layout.
        key = request.user_data.username or extract_username(request.url)
        canonical = request.user_data.canonical
        # The live page belongs to this thread; stats and content are parsed from one snapshot in parallel.
        snapshot = PageSnapshot(url=page.url, html=page.content())
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="post") as pool:
            stats_future = pool.submit(self.scraper.get_post_info, snapshot, canonical)
            content_future = pool.submit(self.scraper.get_post_content, snapshot)
            post_stats, content = stats_future.result(), content_future.result()
        post_comments = self.scraper.get_post_comments(
            page,
            max_comments=self.crawl_input.max_post_comments,
            mode=self.crawl_input.comments_mode,
            min_date=self.crawl_input.comment_date,
        )
        post = replace(
            content,
            post_id=content.post_id or canonical,
            post_stats=post_stats,
            post_comments=post_comments,
        )
        self.accumulator.append(key, lambda record: merge_post(record, post))
        logger.info("Processed post in %.1fs %s", time.monotonic() - started, request.url)
