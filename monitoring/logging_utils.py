import logging
from typing import Optional, Union


def resolve_level(level: Union[int, str, None]) -> int:
    if isinstance(level, int):
        return level
    if not level:
        return logging.INFO
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(level: Union[int, str, None] = logging.INFO, log_format: Optional[str] = None) -> None:
    """
    Configure process-wide logging for the signal service.

    ``level`` accepts either a logging constant or a name such as ``"DEBUG"``
    taken from the monitoring config. Repeated calls only adjust the level.
    """
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(resolve_level(level))
        return

    fmt = log_format or "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=resolve_level(level), format=fmt)
    # Keep per-frame websocket chatter out of INFO logs
    logging.getLogger('websockets').setLevel(logging.WARNING)
