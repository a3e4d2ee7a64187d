"""
Portal web configuration. The session API runs next to the UI; the REST backend lives at PORTAL_API_URL.
"""
import os

# Portal REST backend (issues tokens, refresh cookie, server-side logout)
PORTAL_API_URL = os.environ.get("PORTAL_API_URL", "http://127.0.0.1:5000").rstrip("/")

REFRESH_PATH = os.environ.get("PORTAL_REFRESH_PATH", "/api/auth/refresh")
LOGOUT_PATH = os.environ.get("PORTAL_LOGOUT_PATH", "/api/auth/logout")

HTTP_TIMEOUT_SECONDS = float(os.environ.get("PORTAL_HTTP_TIMEOUT_SECONDS", "10.0"))

HOST = os.environ.get("PORTAL_WEB_HOST", "127.0.0.1")
PORT = int(os.environ.get("PORTAL_WEB_PORT", "8000"))
