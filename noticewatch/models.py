from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
import hashlib

PREVIEW_MAX_LENGTH = 200


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def item_id(title: str, link: str) -> str:
    """Stable fingerprint of a posting: md5 hex of title + link."""
    return hashlib.md5(f"{title}{link}".encode("utf-8")).hexdigest()


def _parse_timestamp(value) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Item:
    id: str
    title: str
    link: str
    date: Optional[str] = None
    content_preview: str = ""
    crawled_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        for name in ("id", "title", "link"):
            value = getattr(self, name)
            if not value or not value.strip():
                raise ValueError(f"Item {name} cannot be empty")
        object.__setattr__(self, "content_preview", (self.content_preview or "")[:PREVIEW_MAX_LENGTH])
        object.__setattr__(self, "crawled_at", _parse_timestamp(self.crawled_at))

    @classmethod
    def create(cls, title: str, link: str, date: Optional[str] = None,
               content_preview: str = "", crawled_at: Optional[datetime] = None) -> "Item":
        return cls(
            id=item_id(title, link),
            title=title,
            link=link,
            date=date,
            content_preview=content_preview,
            crawled_at=crawled_at or utcnow(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "link": self.link,
            "date": self.date,
            "content_preview": self.content_preview,
            "crawled_at": self.crawled_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Item":
        return cls(
            id=data["id"],
            title=data["title"],
            link=data["link"],
            date=data.get("date"),
            content_preview=data.get("content_preview", ""),
            crawled_at=data["crawled_at"],
        )


@dataclass
class FetchResult:
    ok: bool
    url: str
    html: str = ""
    attempts: int = 0
    resolved_ip: Optional[str] = None
    error: Optional[str] = None


@dataclass
class CrawlResult:
    success: bool
    items: List[Item] = field(default_factory=list)
    new_items: List[Item] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    execution_time_ms: int = 0
    timestamp: datetime = field(default_factory=utcnow)
    is_first_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "items": [item.to_dict() for item in self.items],
            "new_items": [item.to_dict() for item in self.new_items],
            "errors": list(self.errors),
            "execution_time_ms": self.execution_time_ms,
            "timestamp": self.timestamp.isoformat(),
            "is_first_run": self.is_first_run,
        }


@dataclass
class NotificationResult:
    success: bool
    channel: str
    message: str
    recipient_failures: List[str] = field(default_factory=list)
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class CacheStats:
    total_items: int
    oldest_crawled_at: Optional[datetime]
    newest_crawled_at: Optional[datetime]
    size_bytes: int


@dataclass
class ConnectionReport:
    hostname: str
    resolved_ip: Optional[str] = None
    tcp_ok: bool = False
    tls_ok: bool = False
    http_ok: bool = False
    http_status: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.http_ok
