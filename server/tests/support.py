"""Shared constants and helpers for the test suite."""

from datetime import datetime, timedelta

# A Monday noon, far enough out that nothing in the suite is "in the past" by accident
NOW = datetime(2030, 1, 7, 12, 0, 0)

GUILD_ID = 1001
USER_A = 501
USER_B = 502
USER_C = 503
ADMIN = 900


def at(hours: float = 0, **kwargs) -> datetime:
    """A time relative to NOW."""
    return NOW + timedelta(hours=hours, **kwargs)


def user_headers(user_id: int, role_ids: tuple = (), admin: bool = False) -> dict:
    headers = {"X-User-Id": str(user_id)}
    if role_ids:
        headers["X-Role-Ids"] = ",".join(str(r) for r in role_ids)
    if admin:
        headers["X-Admin"] = "true"
    return headers


def iso(value: datetime) -> str:
    return value.isoformat() + "Z"
