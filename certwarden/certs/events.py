#!/usr/bin/env python3
#
# certwarden/certs/events.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""In-process event bus decoupling the lifecycle core from notification delivery."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Union

from ..utils.time import isoformat, utcnow

_log = logging.getLogger(__name__)

_ALERT_HISTORY = 200


@dataclass(frozen=True)
class AlertRaised:
	"""A certificate crossed a monitoring threshold (or was escalated)."""
	certificate_id: int
	domain_name: str
	classification: str
	days_until_expiry: int | None
	reason: str
	escalated: bool = False
	raised_at: datetime = field(default_factory=utcnow)

	def to_dict(self) -> dict[str, Any]:
		data = asdict(self)
		data["raised_at"] = isoformat(self.raised_at)
		return data


@dataclass(frozen=True)
class RenewalCompleted:
	"""One renewal attempt finished (successfully or not)."""
	certificate_id: int
	domain_name: str
	renewal_type: str
	outcome: str
	error_code: str | None = None
	new_expires_at: datetime | None = None
	completed_at: datetime = field(default_factory=utcnow)


Event = Union[AlertRaised, RenewalCompleted]
Subscriber = Callable[[Event], None]


class EventBus:
	"""Fan-out of lifecycle events to subscribers.

	Subscriber failures are logged and never reach the publisher. Alerts are
	kept in a bounded history regardless of whether delivery is enabled.
	"""

	def __init__(self, *, delivery_enabled: Callable[[], bool] | None = None) -> None:
		self._subscribers: list[Subscriber] = []
		self._alerts: deque[AlertRaised] = deque(maxlen=_ALERT_HISTORY)
		self._lock = threading.Lock()
		self._delivery_enabled = delivery_enabled or (lambda: True)

	def subscribe(self, subscriber: Subscriber) -> None:
		with self._lock:
			self._subscribers.append(subscriber)

	def publish(self, event: Event) -> None:
		if isinstance(event, AlertRaised):
			with self._lock:
				self._alerts.append(event)
			_log.warning(
				"CERT_ALERT cert_id=%d domain=%s level=%s days=%s escalated=%s reason=%s",
				event.certificate_id,
				event.domain_name,
				event.classification,
				event.days_until_expiry,
				event.escalated,
				event.reason,
			)

		if not self._delivery_enabled():
			return
		with self._lock:
			subscribers = list(self._subscribers)
		for subscriber in subscribers:
			try:
				subscriber(event)
			except Exception:
				_log.exception("EVENT_SUBSCRIBER_FAILED event=%s", type(event).__name__)

	def recent_alerts(self, limit: int = 50) -> list[AlertRaised]:
		"""Most recent alerts, newest first."""
		with self._lock:
			alerts = list(self._alerts)
		return alerts[::-1][: max(0, limit)]
