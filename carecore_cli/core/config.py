# carecore_cli/core/config.py
from pathlib import Path
import os

# Gateway base URL, including the API prefix
BASE_URL = os.environ.get("CARECORE_URL", "http://localhost:3000/api").rstrip("/")

# CA bundle for TLS verification; unset means the system store
CA_CERT = os.environ.get("CARECORE_CA_CERT")

# Seconds before an HTTP call to the gateway is abandoned
REQUEST_TIMEOUT = float(os.environ.get("CARECORE_TIMEOUT", "10"))

# Local state (session tokens)
APP_DIR = Path(os.environ.get("CARECORE_HOME", str(Path.home() / ".carecore")))
SESSION_FILE = APP_DIR / "session.json"
