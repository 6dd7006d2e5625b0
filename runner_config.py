"""
Configuration settings for the step execution engine.

Values here are the last fallback: a script's `settings` block overrides
them, and per-step fields override the script settings.
"""

import os

# Address of the trusted local proxy that performs live requests.
# Credentials and CORS are handled there, never inside the engine.
PROXY_URL = os.environ.get("WALKTHROUGH_PROXY_URL", "http://127.0.0.1:3000")

# Timeout in seconds for one live call through the proxy
REQUEST_TIMEOUT = float(os.environ.get("WALKTHROUGH_REQUEST_TIMEOUT", "30"))

# Polling defaults (interval in milliseconds, as written in scripts)
POLL_INTERVAL_MS = 2000
POLL_MAX_ATTEMPTS = 30

# Simulated latency in seconds for recorded-mode replay so the pacing
# matches a live run
RECORDED_LATENCY_SECONDS = float(os.environ.get("WALKTHROUGH_RECORDED_LATENCY", "0.5"))

# Shell used by the proxy for shell steps
SHELL_BIN = os.environ.get("WALKTHROUGH_SHELL", "/bin/sh")

# Timeout in seconds for one shell command run by the proxy
SHELL_TIMEOUT = 120

# Name of the recordings file looked up next to a script
RECORDINGS_FILE = "recordings.json"

# Form field names that default to a number input
NUMBER_FIELD_PATTERNS = ["amount", "count", "quantity", "decimals", "limit", "size", "price"]

# Result field types that get a link handler inferred
LINK_FIELD_TYPES = ["address", "tx", "token"]
