# Small config module for the relayhub hub and client

import os

PORT = int(os.environ.get("RELAYHUB_PORT", "8080"))
HOST = os.environ.get("RELAYHUB_HOST", "0.0.0.0")

MAX_MESSAGES = int(os.environ.get("RELAYHUB_MAX_MESSAGES", "100"))
RECENT_ON_CONNECT = int(os.environ.get("RELAYHUB_RECENT_ON_CONNECT", "10"))
SEND_TIMEOUT = float(os.environ.get("RELAYHUB_SEND_TIMEOUT", "2.0"))

CLIENT_URL = os.environ.get("RELAYHUB_CLIENT_URL", "ws://localhost:8080/ws")
CLIENT_MESSAGE_LIMIT = int(os.environ.get("RELAYHUB_CLIENT_MESSAGE_LIMIT", "100"))
LOCAL_REPLAY_LIMIT = int(os.environ.get("RELAYHUB_LOCAL_REPLAY_LIMIT", "50"))
RECONNECT_BASE_DELAY = float(os.environ.get("RELAYHUB_RECONNECT_BASE_DELAY", "3.0"))
MAX_RECONNECT_ATTEMPTS = int(os.environ.get("RELAYHUB_MAX_RECONNECT_ATTEMPTS", "5"))
CACHE_PATH = os.environ.get("RELAYHUB_CACHE_PATH", os.path.expanduser("~/.relayhub/messages.db"))

LOG_LEVEL = os.environ.get("RELAYHUB_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.environ.get("RELAYHUB_LOG_FORMAT", "console").lower()
