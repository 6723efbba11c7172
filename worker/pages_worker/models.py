"""Core data models shared by the page crawler phases."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar

T = TypeVar("T")

SECTIONS = ("home", "posts", "about", "reviews", "services")
OPTIONAL_SECTIONS = frozenset(SECTIONS) - {"home"}


class Label(str, Enum):
    LISTING = "LISTING"
    PAGE = "PAGE"
    POST = "POST"
    UNKNOWN = "UNKNOWN"


def _from_mapping(cls: Type[T], data: Optional[Dict[str, Any]]) -> T:
    """Build a flat dataclass from a mapping, rejecting keys it does not declare."""
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ValueError(f"{cls.__name__} expects a mapping, got {type(data).__name__}")
    allowed = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ValueError(f"Unknown fields for {cls.__name__}: {', '.join(unknown)}")
    return cls(**data)


@dataclass(slots=True)
class Address:
    lat: Optional[float] = None
    lng: Optional[float] = None
    street: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    region: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Address":
        return _from_mapping(cls, data)


@dataclass(slots=True)
class Service:
    title: Optional[str] = None
    text: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Service":
        return _from_mapping(cls, data)

    def identity(self) -> Optional[tuple]:
        if self.title is None and self.text is None:
            return None
        return (self.title, self.text)


@dataclass(slots=True)
class Review:
    review_id: Optional[str] = None
    author: Optional[str] = None
    date: Optional[str] = None
    text: Optional[str] = None
    rating: Optional[float] = None
    url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Review":
        return _from_mapping(cls, data)

    def identity(self) -> Optional[tuple]:
        if self.review_id:
            return ("id", self.review_id)
        if self.author is None and self.date is None and self.text is None:
            return None
        return ("content", self.author, self.date, self.text)


@dataclass(slots=True)
class ReviewSummary:
    average: Optional[float] = None
    count: Optional[int] = None
    reviews: List[Review] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ReviewSummary":
        data = dict(data or {})
        reviews = [Review.from_dict(item) for item in data.pop("reviews", None) or []]
        summary = _from_mapping(cls, data)
        summary.reviews = reviews
        return summary


@dataclass(slots=True)
class Post:
    """A single post with its engagement stats and the comments fetched for it."""

    post_id: Optional[str] = None
    url: Optional[str] = None
    date: Optional[str] = None
    text: Optional[str] = None
    images: List[str] = field(default_factory=list)
    links: List[str] = field(default_factory=list)
    post_stats: Dict[str, Any] = field(default_factory=dict)
    post_comments: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Post":
        return _from_mapping(cls, data)

    def identity(self) -> Optional[str]:
        return self.post_id or self.url


@dataclass(slots=True)
class HomeFragment:
    """Skeleton values scraped from the landing page of a business page."""

    title: Optional[str] = None
    likes: Optional[int] = None
    messenger: Optional[str] = None
    verified: Optional[bool] = None
    address: Address = field(default_factory=Address)


@dataclass(slots=True)
class FieldsFragment:
    """Values scraped from the about section (and the home page intro box)."""

    categories: List[str] = field(default_factory=list)
    info: List[str] = field(default_factory=list)
    email: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    instagram: Optional[str] = None
    twitter: Optional[str] = None
    youtube: Optional[str] = None
    price_range: Optional[str] = None
    products: List[str] = field(default_factory=list)
    impressum: List[str] = field(default_factory=list)
    page_created: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "FieldsFragment":
        return _from_mapping(cls, data)


FIELD_NAMES = tuple(f.name for f in fields(FieldsFragment))


@dataclass(slots=True)
class PageRecord:
    """Consolidated snapshot of one business page, built up by section merges."""

    page_url: Optional[str] = None
    url: Optional[str] = None
    ref: Optional[str] = None
    external_id: Optional[str] = None
    label: Optional[str] = None
    title: Optional[str] = None
    likes: Optional[int] = None
    messenger: Optional[str] = None
    verified: Optional[bool] = None
    address: Address = field(default_factory=Address)
    categories: List[str] = field(default_factory=list)
    info: List[str] = field(default_factory=list)
    email: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    instagram: Optional[str] = None
    twitter: Optional[str] = None
    youtube: Optional[str] = None
    price_range: Optional[str] = None
    products: List[str] = field(default_factory=list)
    impressum: List[str] = field(default_factory=list)
    page_created: Optional[str] = None
    services: List[Service] = field(default_factory=list)
    reviews: ReviewSummary = field(default_factory=ReviewSummary)
    posts: List[Post] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PageRecord":
        data = dict(data or {})
        address = Address.from_dict(data.pop("address", None))
        services = [Service.from_dict(item) for item in data.pop("services", None) or []]
        reviews = ReviewSummary.from_dict(data.pop("reviews", None))
        posts = [Post.from_dict(item) for item in data.pop("posts", None) or []]
        record = _from_mapping(cls, data)
        record.address = address
        record.services = services
        record.reviews = reviews
        record.posts = posts
        return record

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class UserData:
    label: Optional[Label] = None
    id: Optional[str] = None
    sub: Optional[str] = None
    ref: Optional[str] = None
    use_mobile: Optional[bool] = None
    user_agent: Optional[str] = None
    username: Optional[str] = None
    canonical: Optional[str] = None


_PAYLOAD_KEYS = {
    "label": "label",
    "id": "id",
    "sub": "sub",
    "ref": "ref",
    "use_mobile": "useMobile",
    "user_agent": "userAgent",
    "username": "username",
    "canonical": "canonical",
}


@dataclass(slots=True)
class CrawlRequest:
    url: str
    user_data: UserData = field(default_factory=UserData)
    retry_count: int = 0
    no_retry: bool = False
    error_messages: List[str] = field(default_factory=list)

    @property
    def unique_key(self) -> str:
        label = self.user_data.label.value if self.user_data.label else ""
        return f"{self.url}|{label}|{self.user_data.sub or ''}"

    def to_payload(self) -> Dict[str, Any]:
        """Serialize into the queue shape ``{url, userData: {...}}``, omitting unset values."""
        user_data: Dict[str, Any] = {}
        for attr, key in _PAYLOAD_KEYS.items():
            value = getattr(self.user_data, attr)
            if value is None:
                continue
            user_data[key] = value.value if isinstance(value, Label) else value
        return {"url": self.url, "userData": user_data}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "CrawlRequest":
        raw = dict(payload.get("userData") or {})
        reverse = {key: attr for attr, key in _PAYLOAD_KEYS.items()}
        unknown = sorted(set(raw) - set(reverse))
        if unknown:
            raise ValueError(f"Unknown userData fields: {', '.join(unknown)}")
        values = {reverse[key]: value for key, value in raw.items()}
        if values.get("label") is not None:
            values["label"] = Label(values["label"])
        return cls(url=payload["url"], user_data=UserData(**values))
