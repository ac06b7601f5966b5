import logging
import os

# Create a logger instance
logger = logging.getLogger(__name__)
logger.setLevel(getattr(logging, os.environ.get("OSGEN_LOG_LEVEL", "INFO").upper(), logging.INFO))

# Console handler on stderr; stdout belongs to the stdio transport
handler = logging.StreamHandler()

formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
handler.setFormatter(formatter)

logger.addHandler(handler)
