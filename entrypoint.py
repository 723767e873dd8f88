import uvicorn
import os
from logging_config import setup_logging

# Setup logging before importing app
log_level = os.getenv("LOG_LEVEL", "DEBUG")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)

from app import app
from constants import HOST, PORT
from logging_config import get_logger

logger = get_logger(__name__)

if __name__ == "__main__":
    logger.info(f"Starting conversation hub on {HOST}:{PORT}")
    # single process: the hub keeps its state in memory
    uvicorn.run(app, host=HOST, port=PORT, workers=1)
