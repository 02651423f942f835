import logging
from colorlog import ColoredFormatter, StreamHandler

# loggers that get the console handler; modules log via logging.getLogger(__name__)
LOGGER_NAMES = ('fundtrack', 'contracts', 'oracle', 'scripts')

formatter = ColoredFormatter(
    '%(log_color)s%(levelname)s%(reset)s:%(asctime)s:%(purple)s%(name)s%(reset)s:%(log_color)s%(message)s%(reset)s',
    datefmt=None,
    reset=True,
    log_colors={
        'DEBUG':    'cyan',
        'INFO':     'green',
        'WARNING':  'yellow',
        'ERROR':    'red',
        'CRITICAL': 'red,bg_white',
    },
    secondary_log_colors={},
    style='%'
)

_handler = None


def configure_logging(level='INFO'):
    """Attach the colored console handler to the FundTrack loggers."""
    global _handler
    if _handler is None:
        _handler = StreamHandler()
        _handler.setFormatter(formatter)

    for name in LOGGER_NAMES:
        log = logging.getLogger(name)
        log.setLevel(level)
        if _handler not in log.handlers:
            log.addHandler(_handler)
        # keep records from reaching the root handlers twice
        log.propagate = False


def reset_logging():
    global _handler
    if _handler is None:
        return
    for name in LOGGER_NAMES:
        logging.getLogger(name).removeHandler(_handler)
        logging.getLogger(name).propagate = True
    _handler = None


logger = logging.getLogger('fundtrack')
