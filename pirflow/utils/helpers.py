"""Shared parsing helpers for services and blueprints."""
from datetime import date, datetime, time, timezone


def parse_datetime(value):
    """Parse an ISO date or datetime string to an aware UTC datetime.

    Returns None for empty input, raises ValueError on bad input.

    Supports:
    - YYYY-MM-DD (midnight UTC)
    - YYYY-MM-DDTHH:MM:SS[.ffffff][+HH:MM|Z]
    - date / datetime objects
    """
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValueError(
                "Invalid date format. Use YYYY-MM-DD or an ISO 8601 datetime."
            ) from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_bool(value, default=False):
    """Interpret query-string style booleans ("1", "true", "yes")."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def parse_int(value, default, minimum=0, maximum=None):
    """Clamp an integer query parameter; fall back to ``default`` on junk."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    number = max(minimum, number)
    if maximum is not None:
        number = min(maximum, number)
    return number
