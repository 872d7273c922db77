import logging
import os
import warnings

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

logger = logging.getLogger("regimen")

# Library default: silent unless the application opts in.
logger.addHandler(logging.NullHandler())
logger.setLevel(logging.WARNING)

_custom_theme = Theme(
    {
        "logging.level.debug": "cyan",
        "logging.level.info": "green",
        "logging.level.warning": "yellow",
        "logging.level.error": "bold red",
        "logging.message": "white",
        "logging.time": "dim cyan",
    }
)


def configure_logging(level: int = logging.WARNING) -> None:
    """
    Send regimen log records to the terminal through a rich handler.

    Parameters
    ----------
    level
        The logging level to use. Defaults to WARNING. Can be overridden by
        the environment variable ``REGIMEN_LOG_LEVEL``.
    """
    env_level = os.getenv("REGIMEN_LOG_LEVEL", "").upper()
    if env_level and hasattr(logging, env_level):
        level = getattr(logging, env_level)

    logger.handlers = []
    handler = RichHandler(
        console=Console(theme=_custom_theme),
        rich_tracebacks=True,
        markup=False,
    )
    logger.addHandler(handler)
    logger.setLevel(level)

    logging.getLogger("patsy").setLevel(logging.WARNING)
    logging.getLogger("sklearn").setLevel(logging.ERROR)
    # statsmodels convergence chatter is surfaced through ModelFitError instead.
    warnings.filterwarnings("ignore", module="statsmodels")

    logger.debug(f"Logging configured with level: {logging.getLevelName(level)}")


def set_log_level(level: int) -> None:
    """Change the logging level after initial configuration."""
    logger.setLevel(level)
