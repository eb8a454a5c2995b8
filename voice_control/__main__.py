"""
Entry point for running the voice control server.

Usage:
    python -m voice_control

Host and port come from VOICE_CONTROL_HOST / VOICE_CONTROL_PORT
(default http://127.0.0.1:8000).
"""
import os

import uvicorn

from logging_setup import setup_logging
from voice_pipeline.config import get_config
from .server import create_app

if __name__ == "__main__":
    setup_logging(level=os.getenv("LOG_LEVEL", "INFO"), use_json=True)

    config = get_config()
    uvicorn.run(
        create_app(config),
        host=config.control_host,
        port=config.control_port,
        log_level="info",
    )
