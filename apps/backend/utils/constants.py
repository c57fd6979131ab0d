"""
Constants used across the spare notification system.
"""

import os

# Public requests for games closer than this notify everyone at once
IMMEDIATE_NOTIFICATION_WINDOW_HOURS = int(os.getenv("IMMEDIATE_NOTIFICATION_WINDOW_HOURS", "24"))

# Default spacing between staggered notifications (seconds)
DEFAULT_NOTIFICATION_DELAY_SECONDS = 180
NOTIFICATION_DELAY_SETTING_KEY = "notification_delay_seconds"

# How often the dispatcher checks for due requests (seconds)
NOTIFICATION_TICK_SECONDS = float(os.getenv("NOTIFICATION_TICK_SECONDS", "5"))

# Claims older than this are considered abandoned and may be reclaimed (seconds)
NOTIFICATION_CLAIM_LEASE_SECONDS = int(os.getenv("NOTIFICATION_CLAIM_LEASE_SECONDS", "600"))

TIME_OVERRIDE_SETTING_KEY = "current_time_override"

# Delivery kinds (message templates)
KIND_SPARE_REQUEST = "spare_request"
KIND_SPARE_FILLED = "spare_filled"
KIND_SPARE_CANCELLATION = "spare_cancellation"
