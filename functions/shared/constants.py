"""
Shared constants for Steady Coach billing.
"""

import os

# User status (drives access policy)
STATUS_FREE = "free"
STATUS_PREMIUM = "premium"
STATUS_PAST_DUE = "past_due"
STATUS_GRACE_PERIOD = "grace_period"
STATUS_SUSPENDED = "suspended"

USER_STATUSES = [
    STATUS_FREE,
    STATUS_PREMIUM,
    STATUS_PAST_DUE,
    STATUS_GRACE_PERIOD,
    STATUS_SUSPENDED,
]

# Payment status (mirrors the Stripe subscription)
PAYMENT_ACTIVE = "active"
PAYMENT_PAST_DUE = "past_due"
PAYMENT_CANCELED = "canceled"
PAYMENT_INCOMPLETE = "incomplete"

# Approval provenance of the current status
APPROVAL_PENDING = "pending"
APPROVAL_STRIPE = "stripe"
APPROVAL_ADMIN = "admin"

# Access levels per status
ACCESS_LEVELS = {
    STATUS_FREE: {"chat": False, "premium_content": False, "assessment": True, "chat_limit": 0},
    STATUS_PREMIUM: {"chat": True, "premium_content": True, "assessment": True, "chat_limit": 100},
    STATUS_PAST_DUE: {"chat": False, "premium_content": False, "assessment": True, "chat_limit": 0},
    STATUS_GRACE_PERIOD: {"chat": True, "premium_content": False, "assessment": True, "chat_limit": 20},
    STATUS_SUSPENDED: {"chat": False, "premium_content": False, "assessment": True, "chat_limit": 0},
}

# Dunning timeline (days since first payment failure)
DUNNING_GENTLE_DAY = 1
DUNNING_URGENT_DAY = 3
DUNNING_FINAL_DAY = 7
GRACE_PERIOD_DAYS = int(os.environ.get("GRACE_PERIOD_DAYS", "7"))

# Subscription pause length for the billing endpoint
PAUSE_DURATION_DAYS = 30

# Admin grace extension
GRACE_EXTENSION_DAYS = 7

# Usage / abuse heuristics
ABUSE_WINDOW_SECONDS = 60
ABUSE_MAX_MESSAGES_PER_WINDOW = 10
ABUSE_DAILY_LIMIT_MULTIPLIER = 1.5
ABUSE_WARNINGS_BEFORE_BLOCK = 3

# Notification retry queue
NOTIFICATION_MAX_RETRIES = 3
NOTIFICATION_RETRY_BATCH_SIZE = 10

# Webhook replay batch
WEBHOOK_RETRY_BATCH_SIZE = 10

# Ledger records expire after 90 days (DynamoDB TTL)
EVENT_TTL_DAYS = 90

# Stripe signature freshness window
WEBHOOK_TOLERANCE_SECONDS = int(os.environ.get("WEBHOOK_TOLERANCE_SECONDS", "300"))

# System actor for automated audit entries
SYSTEM_ACTOR = "system"
SYSTEM_ACTOR_EMAIL = "system@steadycoach.app"
