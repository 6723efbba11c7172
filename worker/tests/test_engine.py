import threading

from pages_worker.core import errors
from pages_worker.core.dispatcher import DispatchOutcome
from pages_worker.core.engine import CrawlEngine
from pages_worker.core.policy import escalation_for
from pages_worker.core.sessions import SessionPool
from pages_worker.models import CrawlRequest, Label, UserData


class DummyPage:
    def __init__(self):
        self.closed = False

    def cookies(self):
        return [{"name": "datr", "value": "abc"}]

    def close(self):
        self.closed = True


class DummyBrowser:
    instances = []

    def __init__(self, open_error=None):
        self.open_error = open_error
        self.pages = []
        self.retired = 0
        self.entered = False
        self.exited = False
        DummyBrowser.instances.append(self)

    def __enter__(self):
        self.entered = True
        return self

    def __exit__(self, exc_type, exc, tb):
        self.exited = True
        return False

    def open(self, request, session, page_timeout_secs):
        if self.open_error:
            raise self.open_error
        page = DummyPage()
        self.pages.append(page)
        return page

    def retire(self):
        self.retired += 1


class ScriptedDispatcher:
    """Fails each URL a given number of times, then succeeds with optional follow-ups."""

    def __init__(self, failures=None, follow_ups=None):
        self.failures = dict(failures or {})
        self.follow_ups = dict(follow_ups or {})
        self.visits = []
        self._lock = threading.Lock()

    def dispatch(self, request, page):
        with self._lock:
            self.visits.append(request.url)
            pending = self.failures.get(request.url)
        if pending:
            error = pending.pop(0)
            return DispatchOutcome(request, ok=False, error=error, escalation=escalation_for(error))
        return DispatchOutcome(request, enqueued=list(self.follow_ups.get(request.url, [])))


def _request(url, sub="home"):
    return CrawlRequest(url=url, user_data=UserData(label=Label.PAGE, sub=sub, use_mobile=True))


def _engine(dispatcher, *, browser_factory=DummyBrowser, session_pool=None, **kwargs):
    DummyBrowser.instances = []
    return CrawlEngine(
        dispatcher,
        browser_factory=browser_factory,
        session_pool=session_pool or SessionPool(),
        **kwargs,
    )


def test_add_request_deduplicates_by_unique_key():
    engine = _engine(ScriptedDispatcher())

    assert engine.add_request(_request("https://m.facebook.com/acme/")) is True
    assert engine.add_request(_request("https://m.facebook.com/acme/")) is False
    assert engine.add_request(_request("https://m.facebook.com/acme/", sub="about")) is True


def test_run_processes_follow_ups_until_queue_drains():
    follow_up = _request("https://m.facebook.com/acme/about/", sub="about")
    dispatcher = ScriptedDispatcher(follow_ups={"https://m.facebook.com/acme/": [follow_up, follow_up]})
    engine = _engine(dispatcher, max_concurrency=3)
    engine.add_request(_request("https://m.facebook.com/acme/"))

    stats = engine.run()

    assert stats == {"finished": 2, "failed": 0, "retried": 0}
    assert sorted(dispatcher.visits) == ["https://m.facebook.com/acme/", "https://m.facebook.com/acme/about/"]
    assert len(DummyBrowser.instances) == 3
    assert all(browser.entered and browser.exited for browser in DummyBrowser.instances)
    assert all(page.closed for browser in DummyBrowser.instances for page in browser.pages)


def test_failed_requests_are_retried_until_they_succeed():
    url = "https://m.facebook.com/acme/"
    dispatcher = ScriptedDispatcher(failures={url: [RuntimeError("timeout"), RuntimeError("timeout")]})
    engine = _engine(dispatcher, max_concurrency=1, max_request_retries=5)
    request = _request(url)
    engine.add_request(request)

    stats = engine.run()

    assert stats == {"finished": 1, "failed": 0, "retried": 2}
    assert request.retry_count == 2
    assert request.error_messages == ["timeout", "timeout"]


def test_retries_are_bounded(caplog):
    url = "https://m.facebook.com/acme/"
    dispatcher = ScriptedDispatcher(failures={url: [RuntimeError("boom")] * 10})
    engine = _engine(dispatcher, max_concurrency=1, max_request_retries=2)
    engine.add_request(_request(url))

    with caplog.at_level("ERROR"):
        stats = engine.run()

    assert stats == {"finished": 0, "failed": 1, "retried": 2}
    assert len(dispatcher.visits) == 3
    assert "Requests failed on https://m.facebook.com/acme/ after 2 retries" in caplog.text


def test_not_found_is_never_retried():
    url = "https://m.facebook.com/acme/about/"
    error = errors.InfoError("gone", namespace=errors.NAMESPACE_NOT_FOUND, url=url)
    dispatcher = ScriptedDispatcher(failures={url: [error]})
    engine = _engine(dispatcher, max_concurrency=1)
    engine.add_request(_request(url, sub="about"))

    stats = engine.run()

    assert stats == {"finished": 0, "failed": 1, "retried": 0}
    assert dispatcher.visits == [url]


def test_captcha_retires_session_and_browser():
    url = "https://m.facebook.com/acme/"
    error = errors.InfoError("captcha", namespace=errors.NAMESPACE_CAPTCHA, url=url)
    dispatcher = ScriptedDispatcher(failures={url: [error]})
    pool = SessionPool(max_pool_size=1)
    engine = _engine(dispatcher, max_concurrency=1, session_pool=pool)
    engine.add_request(_request(url))

    stats = engine.run()

    assert stats["finished"] == 1
    assert stats["retried"] == 1
    assert DummyBrowser.instances[0].retired == 1


def test_browser_open_errors_are_retried_as_failures():
    engine = _engine(
        ScriptedDispatcher(),
        browser_factory=lambda: DummyBrowser(open_error=RuntimeError("net::ERR_PROXY")),
        max_concurrency=1,
        max_request_retries=1,
    )
    request = _request("https://m.facebook.com/acme/")
    engine.add_request(request)

    stats = engine.run()

    assert stats == {"finished": 0, "failed": 1, "retried": 1}
    assert request.error_messages == ["net::ERR_PROXY", "net::ERR_PROXY"]


def test_successful_pages_store_cookies_when_persisting():
    class DummyStore:
        def save(self, key, value):
            pass

        def load(self, key):
            return None

    pool = SessionPool(store=DummyStore(), persist_key="SESSIONS")
    engine = _engine(ScriptedDispatcher(), max_concurrency=1, session_pool=pool)
    engine.add_request(_request("https://m.facebook.com/acme/"))

    engine.run()

    session = pool.get_session()
    assert session.cookies == [{"name": "datr", "value": "abc"}]
    assert session.usage_count == 1
