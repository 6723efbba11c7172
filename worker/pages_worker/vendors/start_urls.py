"""Loading of start requests, including remote tab-separated id/url sources."""

import logging
import re
from typing import Dict, Iterable, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from pages_worker.models import CrawlRequest, UserData

logger = logging.getLogger(__name__)


def _build_session() -> requests.Session:
    session = requests.Session()
    retries = Retry(
        total=3,
        backoff_factor=1,
        status_forcelist=(500, 502, 503, 504),
        allowed_methods=("GET",),
    )
    session.mount("http://", HTTPAdapter(max_retries=retries))
    session.mount("https://", HTTPAdapter(max_retries=retries))
    return session


_SESSION = _build_session()

_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)


def fetch_request_source(url: str) -> str:
    response = _SESSION.get(url, timeout=30)
    response.raise_for_status()
    response.encoding = "utf-8"
    return response.text


def parse_line(line: str) -> Optional[CrawlRequest]:
    parts = line.strip().split("\t")
    if len(parts) < 2 or not parts[1].strip():
        return None
    external_id, url = parts[0].strip(), parts[1].strip()
    if not _SCHEME_RE.match(url):
        url = f"http://{url}"
    return CrawlRequest(url=url, user_data=UserData(id=external_id or None))


def parse_request_source(body: str) -> List[CrawlRequest]:
    """Turn an ``id<TAB>url`` document into requests; the first line is a header."""
    requests_: List[CrawlRequest] = []
    for line in body.splitlines()[1:]:
        request = parse_line(line)
        if request is None:
            continue
        logger.info("csv extraction: id=%s url=%s", request.user_data.id, request.url)
        requests_.append(request)
    return requests_


def load_start_requests(start_urls: Iterable[Dict[str, str]]) -> List[CrawlRequest]:
    """Resolve the configured start URLs into unique requests, keeping their order."""
    loaded: List[CrawlRequest] = []
    for entry in start_urls:
        source = entry.get("requests_from_url")
        if source:
            logger.info("Loading start requests from %s", source)
            loaded.extend(parse_request_source(fetch_request_source(source)))
        elif entry.get("url"):
            loaded.append(CrawlRequest(url=entry["url"], user_data=UserData(id=entry.get("id"))))

    unique: List[CrawlRequest] = []
    seen = set()
    for request in loaded:
        if request.url in seen:
            continue
        seen.add(request.url)
        unique.append(request)
    return unique
