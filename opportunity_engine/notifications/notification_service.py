"""Notification sink protocol"""
from typing import Protocol

from opportunity_engine.db.models.alert_event import AlertEvent


class NotificationSink(Protocol):
    """
    A best-effort delivery channel for alert events.

    notify() may raise; the dispatch coordinator logs the failure and never
    lets it reach other sinks or the alert event itself.
    """

    name: str

    async def notify(self, user_id: str, event: AlertEvent) -> None:
        """Deliver an alert event to a user"""
        ...
