from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from pages_worker.core import errors
from pages_worker.core.accumulator import KeyedAccumulator
from pages_worker.core.config import CrawlInput
from pages_worker.core import dispatcher as dispatcher_module
from pages_worker.core.dispatcher import CSS_SELECTORS, PhaseDispatcher
from pages_worker.models import (
    Address,
    CrawlRequest,
    FieldsFragment,
    HomeFragment,
    Label,
    Post,
    Review,
    ReviewSummary,
    Service,
    UserData,
)


class FakePage:
    def __init__(self, selectors=None, url="https://m.facebook.com/acme/"):
        self.selectors = set(selectors if selectors is not None else [CSS_SELECTORS["mobile_meta"], CSS_SELECTORS["mobile_body_class"]])
        self.url = url
        self.waits = []

    def has_selector(self, selector):
        return selector in self.selectors

    def wait_for_selector(self, selector, timeout_ms):
        self.waits.append((selector, timeout_ms))
        return selector in self.selectors

    def content(self):
        return "<html><body>post</body></html>"


class FakeScraper:
    def __init__(self):
        self.not_found = False
        self.calls = []
        self.services = [Service(title="Delivery")]
        self.reviews = ReviewSummary(average=4.5, count=2, reviews=[Review(review_id="r1", author="Jane")])
        self.services_error = None
        self.reviews_error = None

    def is_not_found_page(self, page):
        return self.not_found

    def get_pages_from_listing(self, page):
        self.calls.append("listing")
        return ["https://www.facebook.com/acme", "https://www.facebook.com/bakery"]

    def get_page_info(self, page):
        self.calls.append("page_info")
        return HomeFragment(title="Acme", likes=10, address=Address(city="Prague"))

    def get_field_infos(self, page):
        self.calls.append("field_infos")
        return FieldsFragment(categories=["Bakery"], email="hello@acme.test")

    def get_services(self, page):
        if self.services_error:
            raise self.services_error
        return self.services

    def get_reviews(self, page, max_reviews, min_date):
        self.calls.append(("reviews", max_reviews, min_date))
        if self.reviews_error:
            raise self.reviews_error
        return self.reviews

    def get_post_urls(self, page, max_posts, min_date):
        self.calls.append(("post_urls", max_posts, min_date))
        return ["https://m.facebook.com/acme/posts/111", "https://m.facebook.com/acme/posts/222"]

    def get_post_info(self, page, canonical):
        self.calls.append(("post_info", page.url, page.content(), canonical))
        return {"reactions": 5, "comments": 1, "shares": 0}

    def get_post_content(self, page):
        return Post(url="https://www.facebook.com/acme/posts/111", text="Fresh bread")

    def get_post_comments(self, page, max_comments, mode, min_date):
        self.calls.append(("comments", max_comments, mode, min_date))
        return [{"name": "Bob", "text": "Yum"}]


def _input(**overrides):
    payload = {"start_urls": ["https://www.facebook.com/acme"]}
    payload.update(overrides)
    return CrawlInput.from_dict(payload)


def _dispatcher(**overrides):
    accumulator = KeyedAccumulator()
    scraper = FakeScraper()
    return PhaseDispatcher(accumulator, scraper, _input(**overrides)), accumulator, scraper


def _page_request(sub, url=None):
    return CrawlRequest(
        url=url or f"https://m.facebook.com/acme/{'' if sub == 'home' else sub + '/'}",
        user_data=UserData(label=Label.PAGE, sub=sub, id="42", ref="https://www.facebook.com/acme", use_mobile=True),
    )


def test_seed_expands_pages_and_listings():
    dispatcher, accumulator, _ = _dispatcher(scrape_services=False)
    start = [
        CrawlRequest(url="https://www.facebook.com/acme", user_data=UserData(id="42")),
        CrawlRequest(url="https://www.facebook.com/pages/category/Bakery/"),
        CrawlRequest(url="https://example.com/nope"),
    ]

    seeded = dispatcher.seed_requests(start)

    subs = [request.user_data.sub for request in seeded if request.user_data.label is Label.PAGE]
    assert subs == ["home", "posts", "about", "reviews"]
    listing = [request for request in seeded if request.user_data.label is Label.LISTING]
    assert len(listing) == 1
    assert listing[0].user_data.use_mobile is False
    record = accumulator.get("acme")
    assert record.page_url == "https://www.facebook.com/acme/"
    assert record.external_id == "42"
    assert record.ref == "https://www.facebook.com/acme"


def test_home_merges_skeleton_and_fields():
    dispatcher, accumulator, _ = _dispatcher()

    outcome = dispatcher.dispatch(_page_request("home"), FakePage())

    assert outcome.ok
    record = accumulator.get("acme")
    assert record.title == "Acme"
    assert record.label == "PAGE"
    assert record.external_id == "42"
    assert record.address.city == "Prague"
    assert record.categories == ["Bakery"]
    assert record.page_url == "https://www.facebook.com/acme/"


def test_about_merges_fields_only():
    dispatcher, accumulator, scraper = _dispatcher()

    outcome = dispatcher.dispatch(_page_request("about"), FakePage())

    assert outcome.ok
    assert accumulator.get("acme").email == "hello@acme.test"
    assert "page_info" not in scraper.calls


def test_listing_enqueues_section_requests():
    dispatcher, accumulator, _ = _dispatcher(scrape_posts=False, scrape_reviews=False, scrape_services=False)
    request = CrawlRequest(
        url="https://www.facebook.com/pages/category/Bakery/",
        user_data=UserData(label=Label.LISTING, use_mobile=False),
    )

    outcome = dispatcher.dispatch(request, FakePage(selectors=[]))

    assert outcome.ok
    assert [(r.url, r.user_data.sub) for r in outcome.enqueued] == [
        ("https://m.facebook.com/acme/", "home"),
        ("https://m.facebook.com/acme/about/", "about"),
        ("https://m.facebook.com/bakery/", "home"),
        ("https://m.facebook.com/bakery/about/", "about"),
    ]
    assert all(r.user_data.ref == request.url for r in outcome.enqueued)
    assert accumulator.get("bakery").ref == request.url


def test_posts_enqueue_desktop_post_requests():
    dispatcher, _, scraper = _dispatcher(max_posts=2)

    outcome = dispatcher.dispatch(_page_request("posts"), FakePage())

    assert outcome.ok
    assert ("post_urls", 2, None) in scraper.calls
    urls = [request.url for request in outcome.enqueued]
    assert urls == ["https://www.facebook.com/acme/posts/111", "https://www.facebook.com/acme/posts/222"]
    user_data = outcome.enqueued[0].user_data
    assert user_data.label is Label.POST
    assert user_data.username == "acme"
    assert user_data.canonical == "111"
    assert user_data.use_mobile is False


def test_post_merges_content_stats_and_comments():
    dispatcher, accumulator, scraper = _dispatcher(comments_mode="RECENT_ACTIVITY")
    request = CrawlRequest(
        url="https://www.facebook.com/acme/posts/111",
        user_data=UserData(label=Label.POST, username="acme", canonical="111", use_mobile=False),
    )

    outcome = dispatcher.dispatch(request, FakePage(selectors=[], url=request.url))

    assert outcome.ok
    post = accumulator.get("acme").posts[0]
    assert post.post_id == "111"
    assert post.text == "Fresh bread"
    assert post.post_stats == {"reactions": 5, "comments": 1, "shares": 0}
    assert post.post_comments == [{"name": "Bob", "text": "Yum"}]
    assert ("comments", 15, "RECENT_ACTIVITY", None) in scraper.calls
    assert ("post_info", request.url, "<html><body>post</body></html>", "111") in scraper.calls


def test_services_and_reviews_soft_fail():
    dispatcher, accumulator, scraper = _dispatcher()
    scraper.services_error = RuntimeError("no services tab")
    scraper.reviews_error = RuntimeError("no reviews tab")

    services = dispatcher.dispatch(_page_request("services"), FakePage())
    reviews = dispatcher.dispatch(_page_request("reviews"), FakePage())

    assert services.ok and reviews.ok
    assert accumulator.get("acme") is None


def test_empty_services_are_not_merged():
    dispatcher, accumulator, scraper = _dispatcher()
    scraper.services = []

    outcome = dispatcher.dispatch(_page_request("services"), FakePage())

    assert outcome.ok
    assert accumulator.get("acme") is None


def test_reviews_use_configured_limits():
    cutoff = "2024-01-01"
    dispatcher, accumulator, scraper = _dispatcher(max_reviews=7, max_review_date=cutoff)

    dispatcher.dispatch(_page_request("reviews"), FakePage())

    assert ("reviews", 7, datetime(2024, 1, 1, tzinfo=timezone.utc)) in scraper.calls
    assert accumulator.get("acme").reviews.count == 2


def test_mobile_captcha_is_classified():
    dispatcher, accumulator, _ = _dispatcher()
    page = FakePage(selectors=[CSS_SELECTORS["mobile_captcha"]])

    outcome = dispatcher.dispatch(_page_request("home"), page)

    assert not outcome.ok
    assert outcome.error.namespace == errors.NAMESPACE_CAPTCHA
    assert outcome.escalation.retire_worker is True
    assert accumulator.get("acme") is None


def test_missing_mobile_markers_is_a_render_mismatch():
    dispatcher, _, _ = _dispatcher()
    page = FakePage(selectors=[CSS_SELECTORS["mobile_meta"]])

    outcome = dispatcher.dispatch(_page_request("home"), page)

    assert outcome.error.namespace == errors.NAMESPACE_MOBILE_RENDER
    assert outcome.escalation.retire_session is True
    assert all(timeout <= 3000 for _, timeout in page.waits)


def test_late_mobile_marker_never_waits_without_timeout(monkeypatch):
    dispatcher, _, _ = _dispatcher()
    ticks = iter([100.0, 100.0, 103.5])
    monkeypatch.setattr(dispatcher_module, "time", SimpleNamespace(monotonic=lambda: next(ticks)))
    page = FakePage(selectors=[CSS_SELECTORS["mobile_meta"]])

    with pytest.raises(errors.InfoError) as excinfo:
        dispatcher.check_preconditions(_page_request("home"), page)

    assert excinfo.value.namespace == errors.NAMESPACE_MOBILE_RENDER
    assert page.waits == [(CSS_SELECTORS["mobile_meta"], 3000), (CSS_SELECTORS["mobile_body_class"], 1)]


def test_desktop_captcha_is_classified():
    dispatcher, _, _ = _dispatcher()
    request = CrawlRequest(
        url="https://www.facebook.com/acme/posts/111",
        user_data=UserData(label=Label.POST, username="acme", use_mobile=False),
    )

    outcome = dispatcher.dispatch(request, FakePage(selectors=[CSS_SELECTORS["desktop_captcha"]]))

    assert outcome.error.namespace == errors.NAMESPACE_CAPTCHA


def test_not_found_marks_request_final():
    dispatcher, _, scraper = _dispatcher()
    scraper.not_found = True
    request = _page_request("about")

    outcome = dispatcher.dispatch(request, FakePage())

    assert not outcome.ok
    assert request.no_retry is True
    assert outcome.escalation.retriable is False
    assert outcome.error.namespace == errors.NAMESPACE_NOT_FOUND


def test_listing_skips_not_found_check():
    dispatcher, _, scraper = _dispatcher()
    scraper.not_found = True
    request = CrawlRequest(
        url="https://www.facebook.com/pages/category/Bakery/",
        user_data=UserData(label=Label.LISTING, use_mobile=False),
    )

    assert dispatcher.dispatch(request, FakePage(selectors=[])).ok


@pytest.mark.parametrize(
    "user_data",
    [
        UserData(label=Label.PAGE, sub="events", use_mobile=False),
        UserData(label=Label.UNKNOWN, use_mobile=False),
        UserData(label=None, use_mobile=False),
    ],
)
def test_unknown_route_is_a_handle_page_error(user_data):
    dispatcher, _, _ = _dispatcher()
    request = CrawlRequest(url="https://www.facebook.com/acme/events/", user_data=user_data)

    outcome = dispatcher.dispatch(request, FakePage(selectors=[]))

    assert not outcome.ok
    assert outcome.error.namespace == errors.NAMESPACE_HANDLE_PAGE
    assert outcome.escalation.retriable is True
