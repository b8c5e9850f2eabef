"""Flatten a reservation request into resource-level items.

A request either names its items explicitly (composite bookings such as two
stylists at once) or carries a single implicit item in its top-level fields.
Everything downstream works on the flat list and never on the raw request.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class ResolvedItem:
    resource: str
    start_time: datetime
    end_time: Optional[datetime] = None
    service: Optional[str] = None
    guest_count: int = 1

    def with_end_time(self, end_time: datetime) -> ResolvedItem:
        return replace(self, end_time=end_time)


def extract_id(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        ref = value.get("id")
        return str(ref) if ref else None
    ref = getattr(value, "id", None)
    return str(ref) if ref else None


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def resolve_reservation_items(data: Mapping[str, Any]) -> list[ResolvedItem]:
    items = data.get("items") or []

    if items:
        resolved: list[ResolvedItem] = []
        for item in items:
            resource = extract_id(item.get("resource")) or extract_id(data.get("resource"))
            start_time = parse_datetime(_first(item.get("start_time"), data.get("start_time")))
            if not resource or start_time is None:
                continue
            resolved.append(
                ResolvedItem(
                    resource=resource,
                    service=extract_id(item.get("service")) or extract_id(data.get("service")),
                    start_time=start_time,
                    end_time=parse_datetime(_first(item.get("end_time"), data.get("end_time"))),
                    guest_count=int(_first(item.get("guest_count"), data.get("guest_count"), 1)),
                )
            )
        return resolved

    resource = extract_id(data.get("resource"))
    start_time = parse_datetime(data.get("start_time"))
    if not resource or start_time is None:
        return []

    return [
        ResolvedItem(
            resource=resource,
            service=extract_id(data.get("service")),
            start_time=start_time,
            end_time=parse_datetime(data.get("end_time")),
            guest_count=int(_first(data.get("guest_count"), 1)),
        )
    ]
