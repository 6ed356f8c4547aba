from __future__ import annotations

import colorsys
import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Literal

from dateutil.relativedelta import relativedelta


DEFAULT_COLLECTION_COLOR = "#3b82f6"
DATE_ONLY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
FIRSTNAME_PATTERN = re.compile(r"^.*\(([^)\s]+)\s+[^)]+\)$")

OPERATIONS = ("CREATE", "UPDATE", "DELETE", "MOVE")
STATUSES = ("SUCCESS", "FAILED", "PARTIAL")


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def is_date_only(value: Any) -> bool:
    return isinstance(value, str) and bool(DATE_ONLY_PATTERN.match(value))


def parse_date_only(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not is_date_only(value):
        raise ValueError(f"expected YYYY-MM-DD, got {value!r}")
    return date.fromisoformat(value)


def serialize_moment(value: date | datetime | None) -> str | None:
    """Dates stay date-only strings; datetimes become UTC ISO-8601."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value).astimezone(timezone.utc).isoformat()
    return value.isoformat()


def date_to_datetime(value: datetime | date | None, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if is_end:
        return datetime.combine(value, time.max, tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def extract_firstname(display_name: str) -> str:
    """``"Travel (Jane Doe)"`` -> ``"Jane"``; anything else is returned unchanged."""
    if not display_name:
        return display_name
    match = FIRSTNAME_PATTERN.match(display_name)
    if match:
        return match.group(1)
    return display_name


def _string_hash(value: str) -> int:
    acc = 0
    for ch in value:
        acc = ((acc << 5) - acc + ord(ch)) & 0xFFFFFFFF
    if acc >= 0x80000000:
        acc -= 0x100000000
    return acc


def collection_color(display_name: str) -> str:
    if not display_name:
        return DEFAULT_COLLECTION_COLOR
    # golden-angle steps over the hue wheel keep neighbours distinct
    hue = (abs(_string_hash(display_name)) * 137.508) % 360
    red, green, blue = colorsys.hls_to_rgb(hue / 360.0, 0.55, 0.85)
    return "#{:02x}{:02x}{:02x}".format(round(red * 255), round(green * 255), round(blue * 255))


def normalize_collection_id(value: str) -> str:
    return str(value or "").strip().rstrip("/").lower()


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
        )


@dataclass
class CacheConfig:
    ttl_seconds: int = 300
    refresh_interval_seconds: int = 180
    lookback_months: int = 3
    lookahead_months: int = 12
    max_iterations: int = 1000
    refresh_workers: int = 4

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CacheConfig":
        data = data or {}
        return cls(
            ttl_seconds=max(1, int(data.get("ttl_seconds", 300))),
            refresh_interval_seconds=max(30, int(data.get("refresh_interval_seconds", 180))),
            lookback_months=max(0, int(data.get("lookback_months", 3))),
            lookahead_months=max(1, int(data.get("lookahead_months", 12))),
            max_iterations=max(1, int(data.get("max_iterations", 1000))),
            refresh_workers=max(1, int(data.get("refresh_workers", 4))),
        )


@dataclass
class CalendarsConfig:
    order: list[str] = field(default_factory=list)
    exclude: list[str] = field(default_factory=list)
    color_overrides: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalendarsConfig":
        data = data or {}
        raw_overrides = data.get("color_overrides", {})
        overrides: dict[str, str] = {}
        if isinstance(raw_overrides, dict):
            for key, value in raw_overrides.items():
                name = str(key).strip()
                color = str(value or "").strip()
                if name and color:
                    overrides[name] = color
        return cls(
            order=[str(x).strip() for x in data.get("order", []) if str(x).strip()],
            exclude=[str(x).strip() for x in data.get("exclude", []) if str(x).strip()],
            color_overrides=overrides,
        )


@dataclass
class AuditConfig:
    db_path: str = "data/audit-history.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AuditConfig":
        data = data or {}
        return cls(db_path=str(data.get("db_path", "data/audit-history.db")).strip() or "data/audit-history.db")


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        return cls(level=str(data.get("level", "INFO")).strip().upper() or "INFO")


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    calendars: CalendarsConfig = field(default_factory=CalendarsConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    debug: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            cache=CacheConfig.from_dict(data.get("cache")),
            calendars=CalendarsConfig.from_dict(data.get("calendars")),
            audit=AuditConfig.from_dict(data.get("audit")),
            logging=LoggingConfig.from_dict(data.get("logging")),
            debug=bool(data.get("debug", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass(frozen=True)
class Collection:
    collection_id: str
    name: str = ""
    display_name: str = ""
    rank: int = 0
    color: str = DEFAULT_COLLECTION_COLOR
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RemoteObject:
    href: str
    etag: str = ""
    data: str = ""


@dataclass
class EventTemplate:
    uid: str
    collection_id: str
    start: date | datetime
    end: date | datetime | None = None
    summary: str = ""
    description: str = ""
    location: str = ""
    all_day: bool = False
    rrule: str | None = None
    exdates: list[date | datetime] = field(default_factory=list)
    overrides: list["EventTemplate"] = field(default_factory=list)
    recurrence_id: date | datetime | None = None
    href: str = ""
    etag: str = ""
    kind: Literal["template"] = "template"

    def __post_init__(self) -> None:
        if not self.uid:
            raise ValueError("EventTemplate requires a uid")
        if not self.collection_id:
            raise ValueError("EventTemplate requires a collection_id")
        if self.start is None:
            raise ValueError("EventTemplate requires a start")

    @property
    def is_recurring(self) -> bool:
        return bool(self.rrule)


@dataclass(frozen=True)
class Occurrence:
    kind: Literal["event", "occurrence"]
    uid: str
    collection_id: str
    start: date | datetime
    end: date | datetime
    summary: str = ""
    description: str = ""
    description_raw: str = ""
    metadata: dict[str, Any] | None = None
    location: str = ""
    all_day: bool = False
    collection_name: str = ""
    rrule: str | None = None
    href: str = ""
    etag: str = ""

    def __post_init__(self) -> None:
        if self.kind not in ("event", "occurrence"):
            raise ValueError(f"unknown occurrence kind: {self.kind!r}")
        if not self.uid or not self.collection_id:
            raise ValueError("Occurrence requires uid and collection_id")
        if self.start is None or self.end is None:
            raise ValueError("Occurrence requires start and end")

    @property
    def is_recurring(self) -> bool:
        return self.kind == "occurrence"

    @property
    def identity(self) -> tuple[str, str | None]:
        if self.is_recurring:
            return (self.uid, serialize_moment(self.start))
        return (self.uid, None)

    def interval(self) -> tuple[datetime, datetime]:
        return (
            date_to_datetime(self.start, is_end=False),
            date_to_datetime(self.end, is_end=True),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "type": self.kind,
            "uid": self.uid,
            "summary": self.summary,
            "description": self.description,
            "description_raw": self.description_raw,
            "metadata": self.metadata,
            "location": self.location,
            "start": serialize_moment(self.start),
            "end": serialize_moment(self.end),
            "all_day": self.all_day,
            "collection": self.collection_id,
            "collection_name": self.collection_name,
        }
        if self.is_recurring:
            payload["is_recurring"] = True
            payload["recurring_event_id"] = self.uid
        return payload


@dataclass(frozen=True)
class CacheEntry:
    collection: Collection
    events: tuple[Occurrence, ...]
    last_refreshed: datetime

    def age_seconds(self, now: datetime | None = None) -> float:
        now = now or utc_now()
        return (now - self.last_refreshed).total_seconds()

    def is_expired(self, ttl_seconds: int, now: datetime | None = None) -> bool:
        return self.age_seconds(now) >= ttl_seconds


@dataclass(frozen=True)
class Actor:
    email: str | None = None
    name: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Actor | None":
        if not data:
            return None
        return cls(email=data.get("email") or None, name=data.get("name") or None)


@dataclass
class AuditRecord:
    event_id: str
    operation: str
    source_collection: str
    before_state: dict[str, Any] | None = None
    after_state: dict[str, Any] | None = None
    status: str = "SUCCESS"
    actor_email: str | None = None
    actor_name: str | None = None
    target_collection: str | None = None
    error_message: str | None = None
    timestamp: str | None = None
    created_at: str | None = None
    id: int | None = None

    def __post_init__(self) -> None:
        if self.operation not in OPERATIONS:
            raise ValueError(f"unknown audit operation: {self.operation!r}")
        if self.status not in STATUSES:
            raise ValueError(f"unknown audit status: {self.status!r}")

    @classmethod
    def for_actor(cls, actor: Actor | None, **kwargs: Any) -> "AuditRecord":
        return cls(
            actor_email=actor.email if actor else None,
            actor_name=actor.name if actor else None,
            **kwargs,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def planning_window(now: datetime, lookback_months: int, lookahead_months: int) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now)
    return now_utc - relativedelta(months=lookback_months), now_utc + relativedelta(months=lookahead_months)


def day_bounds(start: str | date | datetime, end: str | date | datetime) -> tuple[datetime, datetime]:
    """Expand a query range to ``[start 00:00, end 23:59:59.999999]`` in UTC."""
    start_day = _as_day(start)
    end_day = _as_day(end)
    return (
        datetime.combine(start_day, time.min, tzinfo=timezone.utc),
        datetime.combine(end_day, time.max, tzinfo=timezone.utc),
    )


def _as_day(value: str | date | datetime) -> date:
    if isinstance(value, datetime):
        return _ensure_tz(value).astimezone(timezone.utc).date()
    if isinstance(value, date):
        return value
    if is_date_only(value):
        return date.fromisoformat(value)
    parsed = parse_iso_datetime(value)
    if parsed is None:
        raise ValueError("empty date")
    return parsed.astimezone(timezone.utc).date()


def inclusive_to_exclusive_end(value: date) -> date:
    return value + timedelta(days=1)


def exclusive_to_inclusive_end(value: date) -> date:
    return value - timedelta(days=1)
