"""Pure section merges turning scraped fragments into updated page records.

Every merge takes the previous snapshot and a fragment and returns a new
``PageRecord``. Fields are only added or overwritten, never cleared, so the
order in which sections arrive does not matter for disjoint fields.
"""

import logging
from dataclasses import fields, replace
from typing import Iterable, List, Optional

from pages_worker.models import (
    FIELD_NAMES,
    Address,
    FieldsFragment,
    HomeFragment,
    PageRecord,
    Post,
    ReviewSummary,
    Service,
)

logger = logging.getLogger(__name__)


def _merge_address(current: Address, update: Address) -> Address:
    changes = {f.name: getattr(update, f.name) for f in fields(Address) if getattr(update, f.name) is not None}
    return replace(current, **changes)


def merge_identity(
    record: PageRecord,
    *,
    page_url: Optional[str],
    url: Optional[str],
    ref: Optional[str],
    external_id: Optional[str] = None,
) -> PageRecord:
    """Fill identity fields that are still unset; values from earlier merges win."""
    return replace(
        record,
        page_url=record.page_url or page_url,
        url=record.url or url,
        ref=record.ref or ref,
        external_id=record.external_id or external_id,
    )


def merge_home(
    record: PageRecord,
    fragment: HomeFragment,
    *,
    label: Optional[str] = None,
    external_id: Optional[str] = None,
) -> PageRecord:
    changes = {
        name: getattr(fragment, name)
        for name in ("title", "likes", "messenger", "verified")
        if getattr(fragment, name) is not None
    }
    if label:
        changes["label"] = label
    if external_id:
        changes["external_id"] = external_id
    return replace(record, address=_merge_address(record.address, fragment.address), **changes)


def merge_fields(record: PageRecord, fragment: FieldsFragment) -> PageRecord:
    changes = {}
    for name in FIELD_NAMES:
        value = getattr(fragment, name)
        if value is None or value == []:
            continue
        changes[name] = list(value) if isinstance(value, list) else value
    return replace(record, **changes)


def merge_services(record: PageRecord, services: Iterable[Service]) -> PageRecord:
    """Append services not already on the record; resumed crawls revisit the section."""
    return replace(record, services=_unique([*record.services, *services], lambda service: service.identity()))


def _prepend_unique(fresh: List, stored: List, identity) -> List:
    """Place ``fresh`` items first, dropping stored items that a fresh one replaces."""
    return _unique([*fresh, *stored], identity)


def _unique(items: List, identity) -> List:
    seen = set()
    merged = []
    for item in items:
        key = identity(item)
        if key is not None:
            if key in seen:
                continue
            seen.add(key)
        merged.append(item)
    return merged


def merge_reviews(record: PageRecord, fragment: ReviewSummary) -> PageRecord:
    reviews = _prepend_unique(fragment.reviews, record.reviews.reviews, lambda review: review.identity())
    summary = ReviewSummary(
        average=fragment.average if fragment.average is not None else record.reviews.average,
        count=fragment.count if fragment.count is not None else record.reviews.count,
        reviews=reviews,
    )
    return replace(record, reviews=summary)


def merge_post(record: PageRecord, post: Post) -> PageRecord:
    """Put ``post`` in front of the stored posts, replacing an earlier copy of it."""
    posts = _prepend_unique([post], record.posts, lambda item: item.identity())
    if len(posts) == len(record.posts):
        logger.debug("Replaced previously merged post %s", post.identity())
    return replace(record, posts=posts)
