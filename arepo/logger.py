"""Loguru-backed logging for arepo.

Modules obtain a bound logger with ``get_logger(__name__)``. The library
never installs sinks on import; applications call ``configure_logging``
from their composition root (or add their own loguru sinks).
"""

import sys

import typing as t
from loguru import logger as _logger
from pydantic import Field
from pydantic_settings import SettingsConfigDict

from .config import Settings

if t.TYPE_CHECKING:
    from loguru import Logger


class LoggerSettings(Settings):
    model_config = SettingsConfigDict(env_prefix="AREPO_LOGGER_")

    level: str = "INFO"
    format: dict[str, str] = Field(
        default={
            "time": "<b><e>[</e> <w>{time:YYYY-MM-DD HH:mm:ss.SSS}</w> <e>]</e></b>",
            "level": " <level>{level:>8}</level>",
            "sep": " <b><w>in</w></b> ",
            "name": "<b>{extra[mod_name]:>20}</b>",
            "line": "<b><e>[</e><w>{line:^5}</w><e>]</e></b>",
            "message": "  <level>{message}</level>",
        },
    )
    colorize: bool = True
    backtrace: bool = False
    diagnose: bool = False

    @property
    def format_string(self) -> str:
        return "".join(self.format.values())


def _ensure_mod_name(record: dict[str, t.Any]) -> None:
    record["extra"].setdefault("mod_name", record["name"])


def get_logger(name: str) -> "Logger":
    """Return the loguru logger bound to ``name`` (shown as ``mod_name``)."""
    return _logger.bind(mod_name=name.rsplit(".", 1)[-1])


def configure_logging(settings: LoggerSettings | None = None) -> int:
    """Replace loguru's default sink with the arepo stderr sink.

    Returns the loguru sink id so callers can remove it again.
    """
    settings = settings or LoggerSettings()
    _logger.remove()
    _logger.configure(patcher=t.cast("t.Any", _ensure_mod_name))
    return _logger.add(
        sys.stderr,
        level=settings.level.upper(),
        format=settings.format_string,
        colorize=settings.colorize,
        backtrace=settings.backtrace,
        diagnose=settings.diagnose,
    )


__all__ = ["LoggerSettings", "configure_logging", "get_logger"]
