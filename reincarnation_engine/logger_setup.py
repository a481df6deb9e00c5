import logging
import coloredlogs

LOGGER_NAME = "reincarnation"

def setup_global_logger(level: str = 'DEBUG'):
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    # coloredlogs installs its own console handler on 'logger'.
    # The 'level' argument sets the threshold for that handler only.
    coloredlogs.install(level=level, logger=logger, fmt='%(asctime)s %(name)s %(levelname)s %(message)s')
    return logger

# Initialize global logger
logger = setup_global_logger()
