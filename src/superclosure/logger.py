import logging
import sys

from . import CONFIG

logging_handler = logging.StreamHandler(sys.stderr)
logging_handler.setFormatter(
    logging.Formatter("%(asctime)s %(name)s %(levelname)s: %(message)s")
)
logging_handler.setLevel(logging.DEBUG)

logger = logging.getLogger("superclosure")
logger.addHandler(logging_handler)
logger.setLevel(logging.DEBUG)

logger.disabled = not CONFIG.APP.LOGGING
