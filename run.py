#!/usr/bin/env python3
"""Startup script for the payments API."""
import os

import uvicorn

from app.config import settings

if __name__ == "__main__":
    port = int(os.environ.get("PORT", settings.port))
    print(f"Starting {settings.app_name} on port {port}")
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=port,
        log_level="info",
        reload=settings.is_development,
    )
