"""
Wiring for the billing core.

Handlers build the ledger, dispatcher and synchronizer here from the lazy
AWS client factory and hand them to the core classes explicitly.
"""

import os

from shared.aws_clients import get_cognito, get_dynamodb, get_ses
from shared.event_ledger import EventLedger
from shared.notifications import NotificationDispatcher
from shared.status_sync import StatusSynchronizer
from shared.usage import get_usage_table
from shared.users import get_users_table

WEBHOOK_EVENTS_TABLE = os.environ.get("WEBHOOK_EVENTS_TABLE", "steadycoach-webhook-events")
ADMIN_LOGS_TABLE = os.environ.get("ADMIN_LOGS_TABLE", "steadycoach-admin-logs")
NOTIFICATIONS_TABLE = os.environ.get("NOTIFICATIONS_TABLE", "steadycoach-notifications")
NOTIFICATION_SENDER = os.environ.get("NOTIFICATION_SENDER", "billing@steadycoach.app")

__all__ = [
    "get_admin_logs_table",
    "get_dispatcher",
    "get_ledger",
    "get_synchronizer",
    "get_usage_table",
    "get_users_table",
]


def get_admin_logs_table():
    return get_dynamodb().Table(ADMIN_LOGS_TABLE)


def get_ledger() -> EventLedger:
    return EventLedger(get_dynamodb().Table(WEBHOOK_EVENTS_TABLE))


def get_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher(
        get_ses(),
        get_dynamodb().Table(NOTIFICATIONS_TABLE),
        NOTIFICATION_SENDER,
    )


def get_synchronizer(dispatcher: NotificationDispatcher | None = None) -> StatusSynchronizer:
    # Pool id is read per call so tests can point it at a freshly created pool
    return StatusSynchronizer(
        users_table=get_users_table(),
        logs_table=get_admin_logs_table(),
        cognito=get_cognito(),
        dispatcher=dispatcher or get_dispatcher(),
        user_pool_id=os.environ.get("USER_POOL_ID", ""),
    )
