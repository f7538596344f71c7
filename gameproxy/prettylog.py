"""Colourised, component-tagged console logging.

Each line shows a timestamp, level, component and message. Up to five
structured fields are printed inline; more are printed as indented JSON.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import sys
import time

RESET = "\033[0m"

RED = 31
YELLOW = 33
MAGENTA = 35
CYAN = 36
DARK_GRAY = 90
LIGHT_GREEN = 92
WHITE = 97

MAX_INLINE_FIELDS = 5
COMPONENT_WIDTH = 12
LOGGER_NAME = "gameproxy"

_LEVEL_STYLES = {
    logging.DEBUG: ("DEBUG", CYAN),
    logging.INFO: ("INFO", LIGHT_GREEN),
    logging.WARNING: ("WARN", YELLOW),
    logging.ERROR: ("ERROR", RED),
}


def colorize(color_code: int, value: str) -> str:
    """Wrap ``value`` in an ANSI colour sequence."""
    return f"\033[{color_code}m{value}{RESET}"


def _json_default(value):
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    return str(value)


def _jsonable(value):
    return json.loads(json.dumps(value, default=_json_default, ensure_ascii=False))


def _display(value) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "<nil>"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, ensure_ascii=False)


class PrettyHandler(logging.Handler):
    """Logging handler that writes one coloured line per record."""

    def __init__(self, level=logging.NOTSET, stream=None) -> None:
        super().__init__(level)
        self._stream = stream

    @staticmethod
    def _timestamp(record: logging.LogRecord) -> str:
        clock = time.strftime("%H:%M:%S", time.localtime(record.created))
        return f"[{clock}.{int(record.msecs):03d}]"

    def format_record(self, record: logging.LogRecord) -> str:
        """Render a record as a single output line, without a newline."""
        label, color = _LEVEL_STYLES.get(record.levelno, (record.levelname, None))
        level = f"{label + ':':<6}"
        if color is not None:
            level = colorize(color, level)

        component_name = getattr(record, "component", "") or ""
        component = f"[{component_name.upper()}]".ljust(COMPONENT_WIDTH)

        raw_fields = getattr(record, "fields", None) or {}
        fields = {
            key: _jsonable(value) for key, value in raw_fields.items() if key != "component"
        }

        stamp = colorize(WHITE, self._timestamp(record))
        message = colorize(WHITE, record.getMessage())

        if len(fields) <= MAX_INLINE_FIELDS:
            pairs = " ".join(f'"{key}": "{_display(value)}"' for key, value in fields.items())
            attrs = f"{{ {pairs} }}" if pairs else ""
            parts = [stamp, level, colorize(MAGENTA, component), message, colorize(DARK_GRAY, attrs)]
        else:
            body = json.dumps(fields, indent=1, sort_keys=True, ensure_ascii=False)
            parts = [stamp, colorize(MAGENTA, component), level, message, colorize(DARK_GRAY, body)]

        return " ".join(parts)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format_record(record)
            stream = self._stream if self._stream is not None else sys.stdout
            stream.write(line + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)


class ComponentLogger:
    """Logger bound to a component name that takes structured fields as keywords."""

    def __init__(self, component: str, logger: logging.Logger | None = None) -> None:
        self.component = component
        self._logger = logger if logger is not None else logging.getLogger(LOGGER_NAME)

    def _log(self, level: int, msg: str, fields: dict) -> None:
        if self._logger.isEnabledFor(level):
            self._logger.log(
                level,
                msg,
                extra={"component": self.component, "fields": fields},
                stacklevel=3,
            )

    def debug(self, msg: str, **kwargs) -> None:
        self._log(logging.DEBUG, msg, kwargs)

    def info(self, msg: str, **kwargs) -> None:
        self._log(logging.INFO, msg, kwargs)

    def warning(self, msg: str, **kwargs) -> None:
        self._log(logging.WARNING, msg, kwargs)

    def error(self, msg: str, **kwargs) -> None:
        self._log(logging.ERROR, msg, kwargs)


def install(level=logging.DEBUG) -> PrettyHandler:
    """Route the package's log output through a PrettyHandler on stdout."""
    logger = logging.getLogger(LOGGER_NAME)
    for existing in list(logger.handlers):
        if isinstance(existing, PrettyHandler):
            logger.removeHandler(existing)
    handler = PrettyHandler(level)
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return handler


def with_component(component: str) -> ComponentLogger:
    """Return a logger that tags every record with ``component``."""
    return ComponentLogger(component)