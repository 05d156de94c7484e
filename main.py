#!/usr/bin/env python3
"""
Main entry point for the Mall Assistant API.
Handles server startup with environment-based configuration.
"""
import uvicorn
from mall_assistant.config import APP_PORT

if __name__ == "__main__":
    print(f"🚀 Starting Mall Assistant API on port {APP_PORT}")
    uvicorn.run(
        "mall_assistant.assistant_api:app",
        host="0.0.0.0",
        port=APP_PORT,
        reload=True,
        log_level="info"
    )
