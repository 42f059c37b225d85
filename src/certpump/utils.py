from __future__ import annotations

import hashlib
import ipaddress
from datetime import datetime, timezone
from email.utils import format_datetime


def sha1_hex(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


def serial_hex(serial_number: int) -> str:
    return format(serial_number, "x")


def dt_to_rfc1123z(dt: datetime) -> str:
    """Format as 'Mon, 02 Jan 2006 15:04:05 +0000', always in UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return format_datetime(dt.astimezone(timezone.utc).replace(microsecond=0))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    return True
