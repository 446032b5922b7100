"""
Configuration for the Lightning Tip Jar.

Set via environment variables or a .env / .env.local file.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# Base
BASE_DIR = Path(__file__).parent.resolve()

# .env.local wins over .env; real environment variables win over both
ENV_FILE = os.getenv("ENV_FILE", str(BASE_DIR / ".env.local"))
load_dotenv(ENV_FILE)
load_dotenv(BASE_DIR / ".env")

APP_ENV = os.getenv("APP_ENV", "development").lower()  # development | production | test
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
PORT = int(os.getenv("PORT", "8080"))

# CORS - allowed origins for a browser frontend (comma-separated)
_DEFAULT_CORS = "http://localhost:5173,http://localhost:3000,http://127.0.0.1:5173,http://127.0.0.1:3000"
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", _DEFAULT_CORS).split(",")
    if origin.strip()
]

# Real Lightning backend: "lnbits" | "nwc"
LIGHTNING_BACKEND = os.getenv("LIGHTNING_BACKEND", "lnbits").lower()

# Outside production the mock backend is used unless this is set
USE_REAL_LNBITS = os.getenv("USE_REAL_LNBITS", "false").lower() == "true"

# LNbits (when LIGHTNING_BACKEND=lnbits)
LNBITS_URL = os.getenv("LNBITS_URL", "")
LNBITS_INVOICE_KEY = os.getenv("LNBITS_INVOICE_KEY", "")  # Invoice/read key is enough

# Nostr Wallet Connect (when LIGHTNING_BACKEND=nwc)
# nostr+walletconnect://<wallet pubkey>?relay=wss://...&secret=<hex>
NOSTR_WALLET_CONNECT_URL = os.getenv("NOSTR_WALLET_CONNECT_URL", "")

# Timeouts (seconds)
BACKEND_TIMEOUT_SECONDS = float(os.getenv("BACKEND_TIMEOUT_SECONDS", "10"))
NWC_TIMEOUT_SECONDS = float(os.getenv("NWC_TIMEOUT_SECONDS", "10"))

# Tip flow
DEFAULT_MEMO = os.getenv("DEFAULT_MEMO", "Lightning Tip Jar")
PRESET_AMOUNTS = [21, 404, 1000, 20000]
DEFAULT_AMOUNT = PRESET_AMOUNTS[0]
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "3"))
CELEBRATION_SECONDS = float(os.getenv("CELEBRATION_SECONDS", "5"))

# Dev only: mock lookups settle at random instead of waiting for a simulated payment
MOCK_RANDOM_SETTLEMENT = os.getenv("MOCK_RANDOM_SETTLEMENT", "false").lower() == "true"

# Terminal client
TIPJAR_URL = os.getenv("TIPJAR_URL", f"http://localhost:{PORT}")
