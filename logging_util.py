import logging

LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'


def setup_logger(name: str = "sarah_otp", level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        logger.setLevel(level)
        handler = logging.StreamHandler()
        formatter = logging.Formatter(LOG_FORMAT)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger
