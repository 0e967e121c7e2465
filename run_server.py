#!/usr/bin/env python
"""Start the resolver API with uvicorn; settings come from the environment and .env."""
import os

import uvicorn
from dotenv import load_dotenv


def _flag(name: str) -> bool:
    return os.getenv(name, "false").lower() in ("1", "true", "yes", "on")


if __name__ == "__main__":
    # .env must be loaded before app.main configures logging from it
    load_dotenv()

    uvicorn.run(
        "app.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "7860")),
        reload=_flag("RELOAD"),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
        access_log=_flag("ACCESS_LOG"),
    )
