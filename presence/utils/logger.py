"""Logging utilities."""

import logging

from presence.core.config import LoggingConfig


def setup_logging(config: LoggingConfig, verbose: bool = False) -> None:
    """Setup application logging.

    Args:
        config: Logging configuration (an empty ``file`` logs to the console only)
        verbose: Force DEBUG level regardless of the configured one
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if config.file:
        handlers.insert(0, logging.FileHandler(config.file))

    level = logging.DEBUG if verbose else getattr(logging, config.level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )
    # librosa pulls in numba, which logs every JIT compilation at DEBUG
    logging.getLogger("numba").setLevel(logging.WARNING)
