from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any

from cadence.errors import InvalidRuleError


EVENT_STATUSES = ("Pending", "Confirmed", "Completed", "Postponed", "Cancelled")
STATUS_COMPLETED = "Completed"
FREQUENCIES = ("daily", "weekly", "monthly")
END_CONDITION_TYPES = ("date", "count")


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return _ensure_tz(datetime.fromisoformat(text))


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def parse_iso_date(value: str | date | datetime | None) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    # Accept full timestamps from clients that send "2024-01-01T00:00:00Z".
    return date.fromisoformat(text[:10])


def serialize_date(value: date | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def _rule_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise InvalidRuleError(f"{field_name} must be an integer", field=field_name)
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidRuleError(f"{field_name} must be an integer", field=field_name) from exc


@dataclass
class EndCondition:
    type: str
    value: date | int

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "EndCondition | None":
        if not data:
            return None
        kind = str(data.get("type", "")).strip().lower()
        raw_value = data.get("value")
        if kind == "date":
            try:
                parsed = parse_iso_date(raw_value)
            except ValueError as exc:
                raise InvalidRuleError(
                    f"endCondition date is not an ISO date: {raw_value!r}", field="endCondition.value"
                ) from exc
            if parsed is None:
                raise InvalidRuleError("endCondition date is missing", field="endCondition.value")
            return cls(type=kind, value=parsed)
        if kind == "count":
            return cls(type=kind, value=_rule_int(raw_value, "endCondition.value"))
        raise InvalidRuleError(f"unsupported endCondition type: {kind!r}", field="endCondition.type")

    def to_dict(self) -> dict[str, Any]:
        if isinstance(self.value, date):
            return {"type": self.type, "value": self.value.isoformat()}
        return {"type": self.type, "value": self.value}


@dataclass
class RecurrenceRule:
    frequency: str
    interval: int = 1
    days_of_week: list[int] | None = None
    end_condition: EndCondition | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RecurrenceRule | None":
        if data is None:
            return None
        raw_days = data.get("daysOfWeek", data.get("days_of_week"))
        days: list[int] | None = None
        if raw_days is not None:
            if not isinstance(raw_days, (list, tuple, set)):
                raise InvalidRuleError("daysOfWeek must be a list", field="daysOfWeek")
            days = sorted({_rule_int(day, "daysOfWeek") for day in raw_days})
        raw_end = data.get("endCondition", data.get("end_condition"))
        return cls(
            frequency=str(data.get("frequency", "")).strip().lower(),
            interval=_rule_int(data.get("interval", 1), "interval"),
            days_of_week=days,
            end_condition=EndCondition.from_dict(raw_end if isinstance(raw_end, dict) else None),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "frequency": self.frequency,
            "interval": self.interval,
            "daysOfWeek": list(self.days_of_week) if self.days_of_week is not None else None,
            "endCondition": self.end_condition.to_dict() if self.end_condition else None,
        }


@dataclass
class TicketTemplate:
    id: str | None = None
    event_id: str | None = None
    ticket_type_id: str = ""
    name: str = ""
    price: float = 0.0
    capacity: int = 0
    sold_count: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TicketTemplate":
        data = data or {}
        return cls(
            id=str(data["id"]) if data.get("id") else None,
            event_id=str(data["event_id"]) if data.get("event_id") else None,
            ticket_type_id=str(data.get("ticket_type_id", "") or ""),
            name=str(data.get("name", "") or "").strip(),
            price=max(0.0, float(data.get("price", 0) or 0)),
            capacity=max(0, int(data.get("capacity", 0) or 0)),
            sold_count=max(0, int(data.get("sold_count", 0) or 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def clone(self) -> "TicketTemplate":
        return replace(self)

    def with_updates(self, **kwargs: Any) -> "TicketTemplate":
        return replace(self, **kwargs)


@dataclass
class Event:
    id: str | None = None
    title: str = ""
    description: str = ""
    project_id: str = ""
    venue_id: str = ""
    category: str = ""
    tags: list[str] = field(default_factory=list)
    status: str = "Pending"
    is_all_day: bool = False
    start_date: date | None = None
    end_date: date | None = None
    start_time: str = ""
    end_time: str = ""
    notes: str = ""
    assigned_members: list[dict[str, str]] = field(default_factory=list)
    is_template: bool = False
    parent_event_id: str | None = None
    is_override: bool = False
    recurrence_rule: RecurrenceRule | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Event":
        data = data or {}
        status = str(data.get("status", "Pending") or "Pending").strip()
        if status not in EVENT_STATUSES:
            status = "Pending"
        raw_rule = data.get("recurrence_rule")
        members = data.get("assigned_members") or []
        return cls(
            id=str(data["id"]) if data.get("id") else None,
            title=str(data.get("title", "") or "").strip(),
            description=str(data.get("description", "") or ""),
            project_id=str(data.get("project_id", "") or ""),
            venue_id=str(data.get("venue_id", "") or ""),
            category=str(data.get("category", "") or ""),
            tags=[str(x).strip() for x in data.get("tags") or [] if str(x).strip()],
            status=status,
            is_all_day=bool(data.get("is_all_day", False)),
            start_date=parse_iso_date(data.get("start_date")),
            end_date=parse_iso_date(data.get("end_date")),
            start_time=str(data.get("start_time", "") or ""),
            end_time=str(data.get("end_time", "") or ""),
            notes=str(data.get("notes", "") or ""),
            assigned_members=[
                {"member_id": str(m.get("member_id", "")), "role": str(m.get("role", ""))}
                for m in members
                if isinstance(m, dict)
            ],
            is_template=bool(data.get("is_template", False)),
            parent_event_id=str(data["parent_event_id"]) if data.get("parent_event_id") else None,
            is_override=bool(data.get("is_override", False)),
            recurrence_rule=RecurrenceRule.from_dict(raw_rule) if isinstance(raw_rule, dict) else None,
            created_at=parse_iso_datetime(data.get("created_at")),
            updated_at=parse_iso_datetime(data.get("updated_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start_date"] = serialize_date(self.start_date)
        payload["end_date"] = serialize_date(self.end_date)
        payload["recurrence_rule"] = self.recurrence_rule.to_dict() if self.recurrence_rule else None
        payload["created_at"] = serialize_datetime(self.created_at)
        payload["updated_at"] = serialize_datetime(self.updated_at)
        return payload

    def clone(self) -> "Event":
        return replace(
            self,
            tags=list(self.tags),
            assigned_members=[dict(member) for member in self.assigned_members],
            recurrence_rule=RecurrenceRule.from_dict(self.recurrence_rule.to_dict())
            if self.recurrence_rule
            else None,
        )

    def with_updates(self, **kwargs: Any) -> "Event":
        copied = self.clone()
        for key, value in kwargs.items():
            setattr(copied, key, value)
        return copied

    @property
    def is_persisted(self) -> bool:
        return bool(self.id)

    @property
    def is_occurrence(self) -> bool:
        return self.parent_event_id is not None

    @property
    def is_standalone(self) -> bool:
        return not self.is_template and self.parent_event_id is None

    @property
    def is_preserved(self) -> bool:
        return self.is_occurrence and (self.status == STATUS_COMPLETED or self.is_override)


@dataclass
class SeriesConfig:
    materialize_anchor_occurrence: bool = True
    max_occurrences: int = 730

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SeriesConfig":
        data = data or {}
        return cls(
            materialize_anchor_occurrence=bool(data.get("materialize_anchor_occurrence", True)),
            max_occurrences=max(1, int(data.get("max_occurrences", 730))),
        )


@dataclass
class AppConfig:
    series: SeriesConfig = field(default_factory=SeriesConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(series=SeriesConfig.from_dict(data.get("series")))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SaveOutcome:
    transition: str
    event: Event
    created_ids: list[str] = field(default_factory=list)
    deleted_ids: list[str] = field(default_factory=list)
    ticket_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "transition": self.transition,
            "event": self.event.to_dict(),
            "created_ids": list(self.created_ids),
            "deleted_ids": list(self.deleted_ids),
            "ticket_count": self.ticket_count,
        }


def default_app_config() -> AppConfig:
    return AppConfig()
