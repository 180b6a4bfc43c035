# logger.py - Centralized logging configuration
import os
import logging
from logging.handlers import RotatingFileHandler

LOG_FORMAT = "%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]"


def setup_logger(name, log_file=None, level=logging.INFO, log_dir=None):
    """Set up a logger with file rotation"""
    log_dir = log_dir or os.environ.get("LOG_DIR", "logs")
    if not os.path.exists(log_dir):
        os.makedirs(log_dir, exist_ok=True)

    if not log_file:
        log_file = os.path.join(log_dir, f"{name}.log")

    logger = logging.getLogger(name)

    # Avoid adding handlers multiple times
    if not logger.handlers:
        logger.setLevel(level)

        # File handler with rotation
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10240,
            backupCount=10
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

        # Console handler for development
        if os.environ.get("FLASK_ENV") != "production":
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.DEBUG)
            console_handler.setFormatter(logging.Formatter(
                "%(name)s - %(levelname)s - %(message)s"
            ))
            logger.addHandler(console_handler)

    return logger


def init_logging(app):
    """Attach the rotating handlers to the engine loggers and the Flask app logger."""
    log_dir = app.config.get("LOG_DIR", "logs")
    level = logging.DEBUG if app.debug else logging.INFO

    # The accrual package logs through child loggers of "accrual"
    setup_logger("accrual", level=level, log_dir=log_dir)
    setup_logger("blueprints", level=level, log_dir=log_dir)

    if not any(isinstance(h, RotatingFileHandler) for h in app.logger.handlers):
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, "app.log"),
            maxBytes=10240,
            backupCount=10
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_handler.setLevel(logging.INFO)
        app.logger.addHandler(file_handler)
    app.logger.setLevel(level)
