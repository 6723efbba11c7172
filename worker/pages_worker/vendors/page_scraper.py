"""Extraction of structured fragments from rendered business pages."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set
from urllib.parse import parse_qs, urljoin, urlparse, urlunparse

from bs4 import BeautifulSoup

from pages_worker.core.errors import NAMESPACE_FIELD_EXTRACTION, InfoError
from pages_worker.core.urls import classify_url, extract_username, post_canonical_id
from pages_worker.models import (
    Address,
    FieldsFragment,
    HomeFragment,
    Label,
    Post,
    Review,
    ReviewSummary,
    Service,
)

logger = logging.getLogger(__name__)

SOCIAL_HOSTS = {
    "instagram": ("instagram.com", "instagr.am"),
    "twitter": ("twitter.com", "x.com"),
    "youtube": ("youtube.com", "youtu.be"),
}
MESSENGER_HOSTS = {"m.me", "messenger.com", "www.messenger.com"}
NOT_FOUND_MARKERS = (
    "this content isn't available",
    "content not found",
    "page not found",
    "the link you followed may be broken",
    "this page isn't available",
)

EMAIL_REGEX = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)
LIKES_REGEX = re.compile(r"([\d.,]+\s*[KkMm]?)\s+(?:people\s+)?like", re.IGNORECASE)
COORDS_REGEX = re.compile(r"(?:center|markers)=(-?\d+\.\d+)(?:%2C|,)(-?\d+\.\d+)")
PRICE_RANGE_REGEX = re.compile(r"Price range\s*[·:]?\s*(\$+)", re.IGNORECASE)
PAGE_CREATED_REGEX = re.compile(r"Page created\s*[-·:]\s*([A-Za-z]+ \d{1,2}, \d{4})")
AVERAGE_REGEX = re.compile(r"(\d(?:[.,]\d)?)\s*(?:out of 5|/\s*5)")
REVIEW_COUNT_REGEX = re.compile(r"(?:based on|from)\s+(?:the opinion of\s+)?([\d.,]+)\s+(?:people|reviews)", re.IGNORECASE)
RATING_REGEX = re.compile(r"[Rr]ated\s+(\d(?:\.\d)?)")
REACTIONS_REGEX = re.compile(r'"reaction_count":\{"count":(\d+)')
COMMENTS_REGEX = re.compile(r'"comment_count":\{"total_count":(\d+)')
SHARES_REGEX = re.compile(r'"share_count":\{"count":(\d+)')
COMMENT_SELECTOR = '[data-sigil="comment"], [aria-label^="Comment by"]'


def _soup(page) -> BeautifulSoup:
    return BeautifulSoup(page.content(), "html.parser")


def _parse_count(raw: str) -> Optional[int]:
    value = raw.strip().replace(" ", "")
    multiplier = 1
    if value[-1:].lower() == "k":
        multiplier, value = 1000, value[:-1]
    elif value[-1:].lower() == "m":
        multiplier, value = 1000000, value[:-1]
    if multiplier == 1:
        digits = re.sub(r"\D", "", value)
        return int(digits) if digits else None
    try:
        return int(float(value.replace(",", ".")) * multiplier)
    except ValueError:
        return None


def _element_date(node) -> Optional[datetime]:
    """Best-effort timestamp of a post, review or comment element."""
    stamp = node.select_one("[data-utime]")
    if stamp is not None:
        try:
            return datetime.fromtimestamp(int(stamp["data-utime"]), tz=timezone.utc)
        except (TypeError, ValueError):
            return None
    tag = node.select_one("time[datetime]")
    if tag is not None:
        try:
            parsed = datetime.fromisoformat(tag["datetime"].replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _is_older(node, min_date: Optional[datetime]) -> bool:
    if min_date is None:
        return False
    date = _element_date(node)
    return date is not None and date < min_date


def _iso(date: Optional[datetime]) -> Optional[str]:
    return date.isoformat() if date else None


def _unwrap_redirect(href: str) -> str:
    """Resolve ``l.facebook.com/l.php?u=...`` outbound links to their target."""
    parsed = urlparse(href)
    if parsed.path.endswith("/l.php"):
        target = parse_qs(parsed.query).get("u")
        if target:
            return target[0]
    return href


def _text(node) -> str:
    return node.get_text(" ", strip=True) if node is not None else ""


class PageScraper:
    """Turns a rendered page into the fragments merged by the dispatcher.

    Extraction relies on generic markers (meta tags, outbound links, data
    attributes) rather than on a specific revision of the site markup.
    """

    def is_not_found_page(self, page) -> bool:
        soup = _soup(page)
        title = _text(soup.title).lower()
        body = _text(soup.body).lower()[:2000]
        return any(marker in title or marker in body for marker in NOT_FOUND_MARKERS)

    def get_pages_from_listing(self, page) -> List[str]:
        soup = _soup(page)
        found: List[str] = []
        seen: Set[str] = set()
        for anchor in soup.find_all("a", href=True):
            absolute = urljoin(page.url, anchor["href"].strip())
            if classify_url(absolute) is not Label.PAGE:
                continue
            try:
                username = extract_username(absolute)
            except ValueError:
                continue
            if username in seen:
                continue
            seen.add(username)
            parsed = urlparse(absolute)
            found.append(urlunparse((parsed.scheme, parsed.netloc, parsed.path, "", parsed.query, "")))
        return found

    def get_page_info(self, page) -> HomeFragment:
        soup = _soup(page)
        og_title = soup.select_one('meta[property="og:title"]')
        title = og_title.get("content") if og_title else _text(soup.title) or None

        likes = None
        match = LIKES_REGEX.search(_text(soup.body))
        if match:
            likes = _parse_count(match.group(1))

        messenger = None
        for anchor in soup.find_all("a", href=True):
            if "m.me/" in anchor["href"]:
                messenger = anchor["href"]
                break

        verified = soup.select_one('[aria-label*="verified" i], [data-sigil*="verified"]') is not None
        return HomeFragment(
            title=title,
            likes=likes,
            messenger=messenger,
            verified=verified,
            address=self._extract_address(soup),
        )

    def _extract_address(self, soup: BeautifulSoup) -> Address:
        address = Address()
        lat = soup.select_one('meta[property="place:location:latitude"]')
        lng = soup.select_one('meta[property="place:location:longitude"]')
        if lat is not None and lng is not None:
            try:
                address.lat, address.lng = float(lat["content"]), float(lng["content"])
            except (KeyError, ValueError):
                logger.debug("Ignoring malformed location meta tags")
        if address.lat is None:
            for img in soup.find_all("img", src=True):
                match = COORDS_REGEX.search(img["src"])
                if match:
                    address.lat, address.lng = float(match.group(1)), float(match.group(2))
                    break

        for name, prop in (
            ("street", "business:contact_data:street_address"),
            ("city", "business:contact_data:locality"),
            ("postal_code", "business:contact_data:postal_code"),
            ("region", "business:contact_data:region"),
        ):
            tag = soup.select_one(f'meta[property="{prop}"]')
            if tag is not None and tag.get("content"):
                setattr(address, name, tag["content"].strip())
        return address

    def get_field_infos(self, page) -> FieldsFragment:
        soup = _soup(page)
        body_text = _text(soup.body)
        if not body_text:
            raise InfoError("Page fields could not be extracted", namespace=NAMESPACE_FIELD_EXTRACTION, url=page.url)

        fragment = FieldsFragment()
        description = soup.select_one('meta[name="description"], meta[property="og:description"]')
        if description is not None and description.get("content"):
            fragment.info.append(description["content"].strip())

        for anchor in soup.find_all("a", href=True):
            href = _unwrap_redirect(anchor["href"].strip())
            lowered = href.lower()
            if "/pages/category/" in lowered:
                category = _text(anchor)
                if category and category not in fragment.categories:
                    fragment.categories.append(category)
            elif lowered.startswith("mailto:") and not fragment.email:
                fragment.email = href.split(":", 1)[1].split("?")[0].strip().lower() or None
            elif lowered.startswith("tel:") and not fragment.phone:
                fragment.phone = href.split(":", 1)[1].strip() or None
            elif lowered.startswith("http"):
                self._assign_outbound_link(fragment, href)

        if not fragment.email:
            emails = sorted({match.group(0).lower() for match in EMAIL_REGEX.finditer(body_text)})
            fragment.email = emails[0] if emails else None

        match = PRICE_RANGE_REGEX.search(body_text)
        if match:
            fragment.price_range = match.group(1)
        match = PAGE_CREATED_REGEX.search(body_text)
        if match:
            fragment.page_created = match.group(1)
        return fragment

    def _assign_outbound_link(self, fragment: FieldsFragment, href: str) -> None:
        host = (urlparse(href).hostname or "").lower()
        if host.endswith("facebook.com") or host.endswith("fb.com") or host in MESSENGER_HOSTS:
            return
        for platform, allowed_hosts in SOCIAL_HOSTS.items():
            if any(host == allowed or host.endswith(f".{allowed}") for allowed in allowed_hosts):
                if getattr(fragment, platform) is None:
                    setattr(fragment, platform, href)
                return
        if fragment.website is None:
            fragment.website = href

    def get_services(self, page) -> List[Service]:
        soup = _soup(page)
        services: List[Service] = []
        for node in soup.select('[data-sigil*="service"], [data-testid*="service"]'):
            heading = node.find(["h2", "h3", "h4", "strong"])
            title = _text(heading) or None
            text = _text(node)
            if title and text.startswith(title):
                text = text[len(title):].strip()
            if title or text:
                services.append(Service(title=title, text=text or None))
        return services

    def get_reviews(self, page, *, max_reviews: int, min_date: Optional[datetime] = None) -> Optional[ReviewSummary]:
        soup = _soup(page)
        body_text = _text(soup.body)

        average = None
        match = AVERAGE_REGEX.search(body_text)
        if match:
            average = float(match.group(1).replace(",", "."))
        count = None
        match = REVIEW_COUNT_REGEX.search(body_text)
        if match:
            count = _parse_count(match.group(1))

        reviews: List[Review] = []
        for node in soup.select("[data-review-id]"):
            if len(reviews) >= max_reviews:
                break
            if _is_older(node, min_date):
                continue
            rating_match = RATING_REGEX.search(" ".join(tag.get("aria-label", "") for tag in node.select("[aria-label]")))
            author = node.find(["strong", "h3"])
            link = node.find("a", href=True)
            reviews.append(
                Review(
                    review_id=node.get("data-review-id") or None,
                    author=_text(author) or None,
                    date=_iso(_element_date(node)),
                    text=" ".join(_text(p) for p in node.find_all("p")) or None,
                    rating=float(rating_match.group(1)) if rating_match else None,
                    url=urljoin(page.url, link["href"]) if link else None,
                )
            )

        if average is None and not reviews:
            return None
        return ReviewSummary(average=average, count=count, reviews=reviews)

    def get_post_urls(self, page, *, max_posts: int, min_date: Optional[datetime] = None) -> List[str]:
        """Post permalinks of the page, newest first as rendered, bounded by count and date."""
        soup = _soup(page)
        username = extract_username(page.url)
        urls: List[str] = []
        seen: Set[str] = set()
        for anchor in soup.find_all("a", href=True):
            if len(urls) >= max_posts:
                break
            absolute = urljoin(page.url, anchor["href"].strip())
            if classify_url(absolute) is not Label.POST:
                continue
            try:
                if extract_username(absolute) != username:
                    continue
            except ValueError:
                continue
            canonical = post_canonical_id(absolute) or absolute
            if canonical in seen:
                continue
            container = anchor.find_parent(["article", "div"])
            if container is not None and _is_older(container, min_date):
                continue
            seen.add(canonical)
            urls.append(absolute.split("#", 1)[0])
        return urls

    def get_post_info(self, page, canonical: Optional[str]) -> Dict[str, Any]:
        content = page.content()
        if canonical and canonical in content:
            # Counters are serialized next to the post id; narrow the search to that region.
            start = content.find(canonical)
            content = content[start:start + 20000]
        stats: Dict[str, Any] = {}
        for name, regex in (("reactions", REACTIONS_REGEX), ("comments", COMMENTS_REGEX), ("shares", SHARES_REGEX)):
            match = regex.search(content)
            stats[name] = int(match.group(1)) if match else None
        return stats

    def get_post_content(self, page) -> Post:
        soup = _soup(page)
        container = soup.find("article") or soup.body or soup
        message = container.select_one('[data-testid="post_message"], [data-ad-preview="message"], .userContent')
        text = _text(message) or None
        images = [
            img["src"]
            for img in container.find_all("img", src=True)
            if "emoji" not in img["src"] and not img["src"].startswith("data:")
        ]
        links = []
        for anchor in container.find_all("a", href=True):
            href = _unwrap_redirect(anchor["href"])
            host = (urlparse(href).hostname or "").lower()
            if href.startswith("http") and not host.endswith("facebook.com") and href not in links:
                links.append(href)
        return Post(
            post_id=post_canonical_id(page.url),
            url=page.url,
            date=_iso(_element_date(container)),
            text=text,
            images=images,
            links=links,
        )

    def get_post_comments(
        self,
        page,
        *,
        max_comments: int,
        mode: str,
        min_date: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Comments of a post. Replies nested under a comment are only kept in RANKED_UNFILTERED mode."""
        soup = _soup(page)
        nodes = soup.select(COMMENT_SELECTOR)
        replies = {id(reply) for node in nodes for reply in node.select(COMMENT_SELECTOR)}
        comments: List[Dict[str, Any]] = []
        for node in nodes:
            if mode != "RANKED_UNFILTERED" and id(node) in replies:
                continue
            if _is_older(node, min_date):
                continue
            author = node.find(["strong", "h3", "a"])
            author_name = _text(author)
            text = _text(node)
            for reply in node.select(COMMENT_SELECTOR):
                text = text.replace(_text(reply), "").strip()
            if author_name and text.startswith(author_name):
                text = text[len(author_name):].strip()
            comments.append({"author": author_name or None, "text": text or None, "date": _iso(_element_date(node))})

        if mode == "RECENT_ACTIVITY":
            comments.sort(key=lambda comment: comment["date"] or "", reverse=True)
        return comments[:max_comments]
