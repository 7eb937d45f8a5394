"""
ReadGraph - embedding-driven relationship and recommendation engine
HTTP server entry point (FastAPI + uvicorn)
"""

import os

import uvicorn

from app.main import app
from core.config import logger


if __name__ == "__main__":
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "8080"))
    logger.info("ReadGraph starting on %s:%s", host, port)
    uvicorn.run(app, host=host, port=port)
