"""
Session core configuration. Values from env with defaults; no secrets in this file.
"""
import os

# Durable store shared by every running portal instance (same file = same session)
SESSION_DATABASE_URL = os.environ.get("SESSION_DATABASE_URL", "sqlite:///./portal_session.db")

# Keys in the durable store. autoLogoutMinutes is the name the settings page writes.
TOKEN_KEY = "token"
IDLE_TIMEOUT_KEY = "autoLogoutMinutes"
# Decoded user ({"id", "role"}) kept next to the token for screens that read it directly
USER_KEY = "user"

# Seconds added after the token's exp before forcing logout (clock skew, timer slack)
EXPIRY_GRACE_SECONDS = float(os.environ.get("SESSION_EXPIRY_GRACE_SECONDS", "0.5"))

# Idle warning is raised this long before the forced logout, then counts down per tick
IDLE_WARNING_LEAD_SECONDS = 60
IDLE_COUNTDOWN_TICK_SECONDS = 1

# Extra delay on the idle forced-logout timer
IDLE_LOGOUT_SLACK_SECONDS = float(os.environ.get("SESSION_IDLE_LOGOUT_SLACK_SECONDS", "0.25"))

# Used until a value is persisted; 0 disables auto-logout
DEFAULT_IDLE_TIMEOUT_MINUTES = float(os.environ.get("SESSION_IDLE_TIMEOUT_MINUTES", "0"))

# How often to look for writes made by other instances
SYNC_POLL_INTERVAL_SECONDS = float(os.environ.get("SESSION_SYNC_POLL_INTERVAL_SECONDS", "1.0"))

# Change feed rows older than this are pruned by the poller
CHANGE_FEED_RETENTION_SECONDS = int(os.environ.get("SESSION_CHANGE_FEED_RETENTION_SECONDS", "3600"))

# Session events kept for UI polling
EVENT_HISTORY_SIZE = int(os.environ.get("SESSION_EVENT_HISTORY_SIZE", "200"))
