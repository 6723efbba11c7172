"""In-process request queue and worker pool driving the dispatcher."""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Deque, Dict, Set

from pages_worker.core.dispatcher import DispatchOutcome, PhaseDispatcher
from pages_worker.core.errors import InfoError
from pages_worker.core.policy import apply_escalation, escalation_for
from pages_worker.core.sessions import SessionPool
from pages_worker.models import CrawlRequest

logger = logging.getLogger(__name__)


class CrawlEngine:
    """Runs queued requests on ``max_concurrency`` threads until the queue drains.

    Each worker thread owns one browser for its whole life. Failed requests
    are re-queued until ``max_request_retries`` is exhausted or the request
    was marked non-retriable.
    """

    def __init__(
        self,
        dispatcher: PhaseDispatcher,
        *,
        browser_factory: Callable[[], object],
        session_pool: SessionPool,
        max_concurrency: int = 4,
        max_request_retries: int = 5,
        page_timeout_secs: int = 300,
    ) -> None:
        self.dispatcher = dispatcher
        self.browser_factory = browser_factory
        self.session_pool = session_pool
        self.max_concurrency = max(1, max_concurrency)
        self.max_request_retries = max_request_retries
        self.page_timeout_secs = page_timeout_secs

        self._queue: Deque[CrawlRequest] = deque()
        self._seen: Set[str] = set()
        self._in_flight = 0
        self._condition = threading.Condition()
        self.stats: Dict[str, int] = {"finished": 0, "failed": 0, "retried": 0}

    def add_request(self, request: CrawlRequest) -> bool:
        """Queue a request unless one with the same unique key was already queued."""
        with self._condition:
            if request.unique_key in self._seen:
                return False
            self._seen.add(request.unique_key)
            self._queue.append(request)
            self._condition.notify()
            return True

    def _requeue(self, request: CrawlRequest) -> None:
        with self._condition:
            self._queue.append(request)
            self._condition.notify()

    def run(self) -> Dict[str, int]:
        logger.info("Starting crawler with %d queued requests", len(self._queue))
        with ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="crawler") as executor:
            futures = [executor.submit(self._worker_loop) for _ in range(self.max_concurrency)]
            for future in futures:
                future.result()
        logger.info(
            "Crawl finished: %d requests succeeded, %d failed, %d retries",
            self.stats["finished"],
            self.stats["failed"],
            self.stats["retried"],
        )
        return dict(self.stats)

    def _next_request(self):
        with self._condition:
            while not self._queue and self._in_flight:
                self._condition.wait()
            if not self._queue:
                self._condition.notify_all()
                return None
            self._in_flight += 1
            return self._queue.popleft()

    def _task_done(self) -> None:
        with self._condition:
            self._in_flight -= 1
            self._condition.notify_all()

    def _worker_loop(self) -> None:
        with self.browser_factory() as browser:
            while True:
                request = self._next_request()
                if request is None:
                    return
                try:
                    outcome = self.process(request, browser)
                    self._handle_outcome(outcome)
                finally:
                    self._task_done()

    def process(self, request: CrawlRequest, browser) -> DispatchOutcome:
        """Open, dispatch and close one request, applying the escalation on failure."""
        session = self.session_pool.get_session()
        page = None
        try:
            page = browser.open(request, session, page_timeout_secs=self.page_timeout_secs)
            outcome = self.dispatcher.dispatch(request, page)
            if outcome.ok and self.session_pool.persist_cookies:
                session.cookies = page.cookies()
        except Exception as exc:  # noqa: BLE001
            outcome = DispatchOutcome(request, ok=False, error=exc, escalation=escalation_for(exc))
        finally:
            if page is not None:
                page.close()

        if outcome.ok:
            session.mark_good()
        else:
            apply_escalation(outcome.escalation, request, outcome.error, session=session, retire_worker=browser.retire)
        return outcome

    def _handle_outcome(self, outcome: DispatchOutcome) -> None:
        for follow_up in outcome.enqueued:
            self.add_request(follow_up)

        request = outcome.request
        if outcome.ok:
            with self._condition:
                self.stats["finished"] += 1
            return

        request.error_messages.append(str(outcome.error))
        if request.no_retry or request.retry_count >= self.max_request_retries:
            self._handle_failed(request, outcome.error)
            return

        request.retry_count += 1
        with self._condition:
            self.stats["retried"] += 1
        self._requeue(request)

    def _handle_failed(self, request: CrawlRequest, error: BaseException) -> None:
        with self._condition:
            self.stats["failed"] += 1
        if isinstance(error, InfoError):
            logger.error("Request %s failed: %s %s", request.url, error.message, error.to_dict())
        else:
            logger.error("Requests failed on %s after %d retries: %s", request.url, request.retry_count, error)
