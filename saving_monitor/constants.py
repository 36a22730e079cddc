"""
Tuning constants. Cache lifetimes and poll intervals follow how often the
Octopus Energy API actually changes each resource.
"""

from __future__ import annotations
from datetime import timedelta

# --- Cache lifetimes ---------------------------------------------------------
CACHE_METER_DEVICES = timedelta(days=7)  # device list rarely changes
CACHE_USAGE_MEASUREMENTS = timedelta(minutes=30)
CACHE_WHEEL_SPINS = timedelta(hours=12)  # spins refresh daily
CACHE_ACCOUNT_INFO = timedelta(hours=1)
CACHE_CAMPAIGN_STATUS = timedelta(hours=24)
CACHE_OCTOPOINTS = timedelta(hours=1)
CACHE_FREE_ELECTRICITY = timedelta(minutes=5)  # static JSON feed, cheap to poll
CACHE_SAVING_SESSIONS_OFF_PEAK = timedelta(hours=2)
CACHE_SAVING_SESSIONS_PEAK = timedelta(minutes=10)
CACHE_SAVING_SESSIONS_BUSINESS = timedelta(minutes=30)

# --- Poll intervals ----------------------------------------------------------
INTERVAL_PEAK_ANNOUNCEMENT = timedelta(minutes=5)
INTERVAL_BUSINESS_HOURS = timedelta(minutes=10)
INTERVAL_OFF_PEAK = timedelta(minutes=30)
INTERVAL_EVENT_DRIVEN_BASE = timedelta(minutes=15)
INTERVAL_EVENT_DRIVEN_INCREMENT = timedelta(minutes=5)
# window after a new session during which a batch may still be arriving
INTERVAL_AFTER_NEW_SESSION = timedelta(minutes=30)
DEFAULT_CHECK_INTERVAL = timedelta(minutes=15)

# --- UK hours (Europe/London local time) -------------------------------------
UK_TZ = "Europe/London"
UK_PEAK_START_HOUR = 14
UK_PEAK_END_HOUR = 16
UK_BUSINESS_START_HOUR = 9
UK_BUSINESS_END_HOUR = 18

# --- Auth / HTTP -------------------------------------------------------------
JWT_REFRESH_BUFFER = timedelta(minutes=5)
HTTP_TIMEOUT_SEC = 30.0
HTTP_MIN_INTERVAL_SEC = 1.0
HTTP_MAX_RETRIES = 3
HTTP_BASE_BACKOFF_SEC = 1.0
HTTP_JITTER_FRACTION = 0.1
RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})

ERROR_CODE_JWT_EXPIRED = "KT-CT-1139"
ERROR_CODE_INVALID_AUTH = "KT-CT-1143"
AUTH_FAILURE_MARKERS = (
    "Signature of the JWT has expired",
    "JWT has expired",
    "Token has expired",
    ERROR_CODE_JWT_EXPIRED,
    ERROR_CODE_INVALID_AUTH,
    "Authentication failed",
)

# --- Endpoints ---------------------------------------------------------------
API_URL = "https://api.octopus.energy/v1"
GRAPHQL_URL = "https://api.octopus.energy/v1/graphql/"
BACKEND_GRAPHQL_URL = "https://api.backend.octopus.energy/v1/graphql/"
FREE_ELECTRICITY_URL = "https://oe-api.davidskendall.co.uk/free_electricity.json"

CAMPAIGN_OCTOPLUS = "octoplus"
CAMPAIGN_SAVING_SESSIONS = "octoplus-saving-sessions"
CAMPAIGN_FREE_ELECTRICITY = "free_electricity"
TRACKED_CAMPAIGNS = (CAMPAIGN_OCTOPLUS, CAMPAIGN_SAVING_SESSIONS, CAMPAIGN_FREE_ELECTRICITY)

# --- Wheel of Fortune --------------------------------------------------------
WHEEL_SPIN_DELAY_SEC = 1.0

# --- Alerts ------------------------------------------------------------------
ALERT_FINAL = timedelta(minutes=15)
ALERT_SIX_HOUR = timedelta(hours=6)
ALERT_TWELVE_HOUR = timedelta(hours=12)
ALERT_DAY_OF = timedelta(hours=24)
STATE_CLEANUP_AGE = timedelta(days=7)

# --- Display / web -----------------------------------------------------------
DISPLAY_THRESHOLD_24H = timedelta(hours=24)
WEB_DEFAULT_USAGE_DAYS = 7
WEB_MAX_USAGE_DAYS = 30

USER_AGENT = "saving-monitor/1.0"
