"""Run the tunnelwatch API service."""

import uvicorn

from tunnelwatch.config import config
from tunnelwatch.logging_config import setup_logging

if __name__ == "__main__":
    setup_logging()
    uvicorn.run(
        "tunnelwatch.main:app",
        host=config.host,
        port=config.port,
        reload=False,
    )
