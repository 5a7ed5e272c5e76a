# main.py
from __future__ import annotations

import logging
import os
import sys

from dotenv import load_dotenv
from uvicorn import run

# ============================================================
# ENV + PATH
# ============================================================

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
if BASE_DIR not in sys.path:
    sys.path.append(BASE_DIR)

# Platform-injected env always wins; .env only fills gaps for local runs.
if (os.getenv("AUTONOMY_SKIP_DOTENV") or "").strip().lower() not in {"1", "true", "yes"}:
    load_dotenv(override=False)

# ============================================================
# LOGGING
# ============================================================

logger = logging.getLogger("autonomy_bootstrap")
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)

# ============================================================
# RUNTIME GUARDS (CORE)
# ============================================================

# OPENAI_API_KEY and PROMETHEUS_URL are optional: without them the advisor
# is disabled and telemetry comes from static config values.
REQUIRED_ENV_VARS = [
    "DATABASE_URL",
]


def validate_runtime_env_or_raise() -> None:
    missing = [k for k in REQUIRED_ENV_VARS if not (os.getenv(k) or "").strip()]
    if missing:
        logger.critical("Missing ENV vars: %s", ", ".join(missing))
        raise RuntimeError(f"Missing ENV vars: {', '.join(missing)}")
    logger.info("Environment variables validated.")


# ============================================================
# LOAD FASTAPI APP (SSOT: gateway/gateway_server.py)
# ============================================================

# gateway/gateway_server.py owns the boot sequence (runtime wiring + jobs).
from gateway.gateway_server import app  # noqa: E402

logger.info("FastAPI gateway app loaded (SSOT: gateway/gateway_server.py).")

# ============================================================
# START UVICORN
# ============================================================

if __name__ == "__main__":
    validate_runtime_env_or_raise()

    port = int(os.getenv("PORT", "8000"))
    logger.info("Starting Uvicorn on port %s", port)

    run(
        app,
        host="0.0.0.0",
        port=port,
        log_level="info",
    )
