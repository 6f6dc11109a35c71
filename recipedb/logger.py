import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

from .config import LoggingConfig, get_config


def setup_logging(name: str = "recipedb", cfg: Optional[LoggingConfig] = None) -> logging.Logger:
    """
    Configure the package logger once per process.

    Handlers are attached to the ``recipedb`` logger so every module that uses
    ``logging.getLogger(__name__)`` inherits them.

    Args:
        name: Logger name
        cfg: Logging section of the loaded configuration; the global
            configuration is used when omitted, defaults when none is loaded.

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    if cfg is None:
        try:
            cfg = get_config().logging
        except RuntimeError:
            cfg = LoggingConfig()

    logger.setLevel(getattr(logging, cfg.level.upper(), logging.INFO))
    formatter = logging.Formatter(cfg.format)
    if cfg.console_handler.enabled:
        sh = logging.StreamHandler()
        sh.setFormatter(formatter)
        logger.addHandler(sh)
    if cfg.file_handler.enabled:
        os.makedirs(cfg.file_handler.directory, exist_ok=True)
        fh = RotatingFileHandler(
            os.path.join(cfg.file_handler.directory, f"{name.lower()}.log"),
            maxBytes=cfg.file_handler.max_bytes,
            backupCount=cfg.file_handler.backup_count,
            encoding="utf-8",
        )
        fh.setFormatter(formatter)
        logger.addHandler(fh)
    if not logger.handlers:
        logger.addHandler(logging.NullHandler())
    return logger

