from __future__ import annotations
import os

DEFAULT_PARALLELISM = int(os.environ.get("SMOKECI_PARALLELISM", "1"))
DEFAULT_STEP_TIMEOUT = float(os.environ.get("SMOKECI_STEP_TIMEOUT", "600"))
KILL_GRACE_SECONDS = float(os.environ.get("SMOKECI_KILL_GRACE", "5"))
OUTPUT_CAP_BYTES = int(os.environ.get("SMOKECI_OUTPUT_CAP", str(1024 * 1024)))
REPORT_TIMEOUT_SECONDS = float(os.environ.get("SMOKECI_REPORT_TIMEOUT", "10"))
DOCKER_BIN = os.environ.get("SMOKECI_DOCKER", "docker")
