from collections.abc import Iterable
from datetime import UTC, datetime

from app.db.models import Booking

PRODID = "-//Elderly Daycare Platform//Calendar Export//EN"
DEFAULT_SUMMARY = "Elderly Daycare Visit"
ICS_DATETIME_FORMAT = "%Y%m%dT%H%M%SZ"
MAX_LINE_OCTETS = 75


def _format_ics_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(ICS_DATETIME_FORMAT)


def _parse_ics_datetime(value: str) -> datetime:
    return datetime.strptime(value, ICS_DATETIME_FORMAT).replace(tzinfo=UTC)


def _escape_ics_text(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace(";", r"\;")
        .replace(",", r"\,")
        .replace("\r\n", r"\n")
        .replace("\r", r"\n")
        .replace("\n", r"\n")
    )


def _unescape_ics_text(value: str) -> str:
    result: list[str] = []
    chars = iter(value)
    for char in chars:
        if char != "\\":
            result.append(char)
            continue
        escaped = next(chars, "")
        result.append("\n" if escaped in ("n", "N") else escaped)
    return "".join(result)


def _booking_event(booking: Booking, stamped_at: datetime) -> list[str]:
    slot = booking.slot
    service = slot.service if slot else None
    facility = slot.facility if slot else None

    summary = service.name if service else DEFAULT_SUMMARY
    description = f"{facility.name if facility else 'Facility TBD'}\nStatus: {booking.status.replace('_', ' ').capitalize()}"

    lines = [
        "BEGIN:VEVENT",
        f"UID:{_escape_ics_text(booking.uuid)}",
        f"DTSTAMP:{_format_ics_datetime(stamped_at)}",
    ]
    if slot is not None:
        lines.append(f"DTSTART:{_format_ics_datetime(slot.start_at)}")
        lines.append(f"DTEND:{_format_ics_datetime(slot.end_at)}")
    lines.append(f"SUMMARY:{_escape_ics_text(summary)}")
    lines.append(f"DESCRIPTION:{_escape_ics_text(description)}")
    if facility is not None:
        location = ", ".join(part for part in (facility.name, facility.street) if part)
        lines.append(f"LOCATION:{_escape_ics_text(location)}")
    lines.append("END:VEVENT")
    return lines


def fold_ics_line(line: str, limit: int = MAX_LINE_OCTETS) -> list[str]:
    """Split a content line into physical lines of at most ``limit`` UTF-8 octets.

    Continuation lines start with a single space, which counts toward the
    limit. Multi-byte characters are never split.
    """
    parts: list[str] = []
    current = ""
    size = 0
    for char in line:
        width = len(char.encode("utf-8"))
        if size + width > limit:
            parts.append(current)
            current, size = " ", 1
        current += char
        size += width
    parts.append(current)
    return parts


def build_caregiver_calendar_ics(bookings: Iterable[Booking], now: datetime | None = None) -> str:
    stamped_at = now or datetime.now(UTC)
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:{PRODID}",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
    ]
    for booking in bookings:
        lines.extend(_booking_event(booking, stamped_at))
    lines.append("END:VCALENDAR")
    lines.append("")
    return "\r\n".join(part for line in lines for part in fold_ics_line(line))


def _unfold(text: str) -> list[str]:
    lines: list[str] = []
    for raw in text.replace("\r\n", "\n").split("\n"):
        if raw.startswith((" ", "\t")) and lines:
            lines[-1] += raw[1:]
        elif raw:
            lines.append(raw)
    return lines


def parse_calendar_ics(text: str) -> list[dict[str, object]]:
    """Read back the VEVENTs of an export; datetimes come back as aware UTC values."""
    events: list[dict[str, object]] = []
    current: dict[str, object] | None = None

    for line in _unfold(text):
        if line == "BEGIN:VEVENT":
            current = {}
            continue
        if line == "END:VEVENT":
            if current is not None:
                events.append(current)
            current = None
            continue
        if current is None or ":" not in line:
            continue

        name, value = line.split(":", 1)
        name = name.split(";", 1)[0].upper()
        if name in {"DTSTART", "DTEND", "DTSTAMP"}:
            current[name] = _parse_ics_datetime(value)
        else:
            current[name] = _unescape_ics_text(value)

    return events
