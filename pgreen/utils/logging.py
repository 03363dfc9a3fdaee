import colorlog
import logging
import verboselogs
from tqdm import tqdm


class TqdmHandler(logging.StreamHandler):
    def __init__(self):
        logging.StreamHandler.__init__(self)

    def emit(self, record):
        msg = self.format(record)
        tqdm.write(msg)


verboselogs.install()
logger = colorlog.getLogger("pgreen")
logger.setLevel(logging.INFO)
handler = TqdmHandler()
handler.setFormatter(colorlog.ColoredFormatter(
    '%(log_color)s [%(levelname)-8s] [%(asctime)s]: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    log_colors={
        'SPAM': 'white',
        'DEBUG': 'cyan',
        'VERBOSE': 'blue',
        'INFO': 'light_white',
        'NOTICE': 'purple',
        'SUCCESS': 'green',
        'WARNING': 'yellow',
        'ERROR': 'red',
        'CRITICAL': 'red,bg_white'},))
logger.addHandler(handler)
logger.propagate = False


def set_level(level) -> None:
    """
    Sets the verbosity of the package logger.

    Accepts either a numeric level or a level name, including the extra
    names registered by verboselogs (`notice`, `verbose`, `spam`, `success`).
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logger.setLevel(level)
