#!/usr/bin/env python3
#
# certwarden/utils/time.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Timezone-aware time utilities."""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
	"""Return the current UTC time as a timezone-aware datetime."""
	return datetime.now(timezone.utc)


def days_until(expires_at: Optional[datetime], now: datetime) -> Optional[int]:
	"""Whole days until *expires_at*, rounded up; negative once expired."""
	if expires_at is None:
		return None
	remaining = (expires_at - now) / timedelta(days=1)
	return math.ceil(remaining)


def isoformat(dt: Optional[datetime]) -> Optional[str]:
	"""Serialize a datetime as ISO-8601 with a 'Z' suffix (None passes through)."""
	if dt is None:
		return None
	return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
