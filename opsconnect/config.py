"""
Runtime configuration for OpsConnect.

Values are read once from the environment at import time. A
``.env.development`` file at the project root is loaded first so local
development does not need exported variables.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

project_root = Path(__file__).parent.parent
dotenv_path = project_root / ".env.development"
load_dotenv(dotenv_path=dotenv_path)

# Public URL prefix under which inbound webhooks are served
BASE_URL = os.environ.get("OPSCONNECT_BASE_URL", "http://localhost:8000").rstrip("/")

# Fernet key for webhook secrets at rest (base64-url-safe 32 bytes).
# When unset a random key is generated and secrets do not survive a restart.
SECRET_KEY = os.environ.get("OPSCONNECT_SECRET_KEY", "")

HTTP_TIMEOUT = float(os.environ.get("OPSCONNECT_HTTP_TIMEOUT", "30"))

# Completion tracking (seconds)
OCTOPUS_POLL_INTERVAL = float(os.environ.get("OCTOPUS_POLL_INTERVAL", "300"))
OCTOPUS_DEPLOY_TIMEOUT = float(os.environ.get("OCTOPUS_DEPLOY_TIMEOUT", "21600"))
DAYTONA_POLL_INTERVAL = float(os.environ.get("DAYTONA_POLL_INTERVAL", "5"))

# Replay window for timestamped signatures
SVIX_TOLERANCE_SECONDS = int(os.environ.get("SVIX_TOLERANCE_SECONDS", "300"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
