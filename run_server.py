#!/usr/bin/env python3
"""
Start the install orchestrator API with correct Python path.

This ensures the onboarding package can be imported correctly.
"""

import logging
import os
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

if __name__ == "__main__":
    import uvicorn
    from dotenv import load_dotenv

    # Load environment variables before onboarding.config is imported
    env_path = project_root / ".env"
    load_dotenv(dotenv_path=env_path, override=True)

    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        stream=sys.stdout,
    )

    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("PORT") or os.getenv("API_PORT", "8001"))
    reload = os.getenv("UVICORN_RELOAD", "false").lower() == "true"

    logging.getLogger(__name__).info("Starting server on %s:%d", host, port)

    uvicorn.run(
        "onboarding.server:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level.lower(),
    )
