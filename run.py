"""Dev entry point: ``python run.py`` serves placement.server:app with uvicorn."""

import os
import logging
import uvicorn

LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG").upper()

logging.basicConfig(level=LOG_LEVEL, format="%(levelname)-5s [%(name)s] %(message)s")
# aiosqlite logs every statement at DEBUG
logging.getLogger("aiosqlite").setLevel(logging.INFO)

if __name__ == "__main__":
    uvicorn.run(
        "placement.server:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
        reload=os.environ.get("DEV_RELOAD", "0") == "1",
        log_level=LOG_LEVEL.lower(),
    )
