import logging
import sys


def setup_logging(level: str = "INFO") -> None:
    """Configure application logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # avoid stacking handlers when the app factory runs more than once
    for h in list(logger.handlers):
        if getattr(h, "_symreg", False):
            logger.removeHandler(h)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    console_handler._symreg = True
    logger.addHandler(console_handler)

    # Silence noisy libraries
    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)
