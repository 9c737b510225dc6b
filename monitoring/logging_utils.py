import logging
import os
from typing import Iterable, Optional, Union

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Transport libraries log every frame/request at DEBUG and reconnect noise at INFO
NOISY_LOGGERS = ('websockets', 'aiohttp.access', 'uvicorn.access')


def _resolve_level(level: Union[int, str, None]) -> int:
    if level is None:
        level = os.getenv('FOOTPRINT_LOG_LEVEL', 'INFO')
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(level: Union[int, str, None] = None, log_format: Optional[str] = None,
                  quiet: Iterable[str] = NOISY_LOGGERS) -> None:
    """
    Configure process-wide logging for the pipeline and the API server.

    Level comes from the argument, else ``FOOTPRINT_LOG_LEVEL``, else INFO.
    Safe to call more than once; later calls are ignored if handlers exist.
    """
    if logging.getLogger().handlers:
        return

    logging.basicConfig(level=_resolve_level(level), format=log_format or DEFAULT_FORMAT)
    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)
