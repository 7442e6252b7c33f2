# Ensure 'backend/' is on sys.path so 'import app.*' works
# even when pytest rootdir is the repository root.
import os
from pathlib import Path
import sys

_BACKEND_DIR = Path(__file__).resolve().parent
if str(_BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(_BACKEND_DIR))

# CRITICAL: configure the environment BEFORE any app imports.
# CI skips the .env lookup in app.core.config.
os.environ.setdefault("CI", "true")
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["INTEGRITY_ENFORCEMENT"] = "strict"
os.environ["BOOKING_LOCK_BACKEND"] = "memory"
os.environ["QUEUE_PERSISTENCE"] = "memory"
os.environ["RUN_IN_PROCESS_SCHEDULER"] = "false"
os.environ["MONITORING_API_KEY"] = "test-monitoring-key"
os.environ.pop("NOTIFICATION_PROVIDER_RAISE_ON", None)
