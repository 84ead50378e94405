"""
CallRelay Configuration
"""
import os
import json
import socket
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

# SQLite audit database file
_repo_default_db = BASE_DIR / "data" / "calls.db"
_user_default_db = Path.home() / ".callrelay" / "calls.db"

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except (OSError, ValueError):
        config_data = {}

if os.getenv("CALLRELAY_DB"):
    DB_PATH = os.getenv("CALLRELAY_DB")
elif _repo_default_db.parent.exists():
    DB_PATH = str(_repo_default_db)
else:
    # Installed package mode normally runs outside repository checkout.
    DB_PATH = str(_user_default_db)

# HTTP server - default to localhost only
HOST = os.getenv("CALLRELAY_HOST", config_data.get("HOST", "127.0.0.1"))
PORT = int(os.getenv("CALLRELAY_PORT", config_data.get("PORT", "3000")))

# Shared secret every agent channel must present on /sse
SHARED_SECRET = os.getenv("CALLRELAY_SECRET", config_data.get("SHARED_SECRET", ""))

# TLS: uvicorn serves HTTPS when both files are configured
SSL_CERTFILE = os.getenv("CALLRELAY_SSL_CERTFILE", config_data.get("SSL_CERTFILE", "")) or None
SSL_KEYFILE = os.getenv("CALLRELAY_SSL_KEYFILE", config_data.get("SSL_KEYFILE", "")) or None
USE_HTTPS = bool(SSL_CERTFILE and SSL_KEYFILE)
FQDN = os.getenv("CALLRELAY_FQDN", config_data.get("FQDN", "")) or socket.getfqdn()

# SSE reconnect interval advertised to clients (milliseconds)
SSE_RETRY_MS = int(os.getenv("CALLRELAY_SSE_RETRY_MS", config_data.get("SSE_RETRY_MS", "3000")))
# Idle streams send a comment this often (seconds); also the disconnect check cadence
SSE_KEEPALIVE_INTERVAL = float(os.getenv("CALLRELAY_SSE_KEEPALIVE", config_data.get("SSE_KEEPALIVE_INTERVAL", "15")))
# Upper bound on a single dispatch write (seconds). Slower writes count as undelivered.
DISPATCH_WRITE_TIMEOUT = float(os.getenv("CALLRELAY_DISPATCH_TIMEOUT", config_data.get("DISPATCH_WRITE_TIMEOUT", "2")))
# Rows shown by the /calls viewer when no limit is given
CALLS_PAGE_LIMIT = int(os.getenv("CALLRELAY_CALLS_LIMIT", "200"))
RELAY_VERSION = "0.1.0"

# Client (presence agent) timings
LIVENESS_INTERVAL = float(os.getenv("CALLRELAY_LIVENESS_INTERVAL", "24"))
RECONNECT_DELAY = float(os.getenv("CALLRELAY_RECONNECT_DELAY", "5"))
MAX_RETRY_DELAY = float(os.getenv("CALLRELAY_MAX_RETRY_DELAY", "60"))
# Consecutive 403s before the client gives up and reports a misconfigured secret
MAX_UNAUTHORIZED = int(os.getenv("CALLRELAY_MAX_UNAUTHORIZED", "3"))

