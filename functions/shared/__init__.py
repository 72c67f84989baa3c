# Shared billing core package
from .access_policy import get_access, is_in_good_standing
from .constants import ACCESS_LEVELS, USER_STATUSES
from .dunning import DunningDecision, evaluate
from .errors import APIError
from .event_ledger import EventLedger
from .notifications import NotificationDispatcher
from .response_utils import error_response, success_response
from .status_sync import StatusSynchronizer, SyncContext, SyncResult

__all__ = [
    "get_access",
    "is_in_good_standing",
    "ACCESS_LEVELS",
    "USER_STATUSES",
    "DunningDecision",
    "evaluate",
    "EventLedger",
    "NotificationDispatcher",
    "StatusSynchronizer",
    "SyncContext",
    "SyncResult",
    "error_response",
    "success_response",
    "APIError",
]
