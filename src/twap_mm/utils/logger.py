"""
Logging Configuration Module
===========================

Controls loguru sinks for the quoting and execution engine.
Provides quiet, normal and verbose modes plus an optional rotating file sink.
"""

import sys
from enum import Enum
from typing import List, Optional
from loguru import logger


class LogLevel(Enum):
    """Logging levels for different run modes"""
    SILENT = "SILENT"           # Only critical errors
    QUIET = "QUIET"             # Errors and warnings only
    NORMAL = "NORMAL"           # Info, warnings, and errors
    VERBOSE = "VERBOSE"         # Debug and above
    TRACE = "TRACE"             # Everything


LOGURU_LEVELS = {
    LogLevel.SILENT: "CRITICAL",
    LogLevel.QUIET: "WARNING",
    LogLevel.NORMAL: "INFO",
    LogLevel.VERBOSE: "DEBUG",
    LogLevel.TRACE: "TRACE",
}

# Modules that produce per-tick output
NOISY_MODULES = [
    "twap_mm.strategy.volatility",
    "twap_mm.strategy.avellaneda_stoikov",
    "twap_mm.data_ingestion.market_data",
]


class LogConfig:
    """Console and file sink manager"""

    def __init__(self):
        self.current_level = LogLevel.NORMAL
        self._console_sink_id: Optional[int] = None
        self._file_sink_ids: List[int] = []
        self._initialized = False

    def setup_logging(self,
                      level: LogLevel = LogLevel.NORMAL,
                      show_backtrace: bool = False,
                      show_diagnose: bool = False) -> None:
        """
        Replace the console sink.

        Args:
            level: Logging level to use
            show_backtrace: Show full backtraces on errors
            show_diagnose: Show variable values in tracebacks
        """
        if self._console_sink_id is not None:
            logger.remove(self._console_sink_id)
        elif not self._initialized:
            # Drop loguru's default stderr handler once
            logger.remove()

        if level == LogLevel.SILENT:
            format_str = "<red><bold>CRITICAL</bold></red> | {message}"
        elif level == LogLevel.QUIET:
            format_str = "<level>{level}</level> | {message}"
        elif level == LogLevel.NORMAL:
            format_str = ("<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
                          "<cyan>{name}</cyan>:<cyan>{function}</cyan> | {message}")
        else:
            format_str = ("<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
                          "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | {message}")

        self._console_sink_id = logger.add(
            sys.stderr,
            format=format_str,
            level=LOGURU_LEVELS[level],
            backtrace=show_backtrace,
            diagnose=show_diagnose,
            colorize=True
        )

        self.current_level = level

        if level != LogLevel.SILENT and not self._initialized:
            logger.info(f"Logging configured: level={level.value}")

        self._initialized = True

    def set_quiet_mode(self) -> None:
        """Warnings and errors only, per-tick modules muted"""
        self.setup_logging(level=LogLevel.QUIET)
        self.suppress_module_logging(NOISY_MODULES)

    def set_development_mode(self) -> None:
        """Full output with diagnostics"""
        self.setup_logging(
            level=LogLevel.VERBOSE,
            show_backtrace=True,
            show_diagnose=True
        )

    def set_production_mode(self) -> None:
        self.setup_logging(level=LogLevel.NORMAL)

    def set_silent_mode(self) -> None:
        self.setup_logging(level=LogLevel.SILENT)

    def add_file_logging(self,
                         filepath: str,
                         level: LogLevel = LogLevel.VERBOSE,
                         rotation: str = "10 MB",
                         retention: str = "7 days") -> int:
        """
        Add a rotating file sink next to the console sink.

        Args:
            filepath: Path to log file
            level: Logging level for file
            rotation: File rotation policy
            retention: Log retention policy

        Returns:
            loguru sink id
        """
        file_format = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}"

        sink_id = logger.add(
            filepath,
            format=file_format,
            level=LOGURU_LEVELS[level],
            rotation=rotation,
            retention=retention,
            backtrace=True,
            diagnose=False
        )
        self._file_sink_ids.append(sink_id)

        if self.current_level != LogLevel.SILENT:
            logger.info(f"File logging enabled: {filepath}")
        return sink_id

    def remove_file_logging(self) -> None:
        for sink_id in self._file_sink_ids:
            logger.remove(sink_id)
        self._file_sink_ids.clear()

    def suppress_module_logging(self, modules: List[str]) -> None:
        for module in modules:
            logger.disable(module)

        if self.current_level != LogLevel.SILENT:
            logger.info(f"Suppressed logging for modules: {modules}")

    def enable_module_logging(self, modules: List[str]) -> None:
        for module in modules:
            logger.enable(module)

        if self.current_level != LogLevel.SILENT:
            logger.info(f"Enabled logging for modules: {modules}")


# Global log configuration instance
log_config = LogConfig()


def setup_quiet_logging():
    """Quick setup for batch runs - minimal logging"""
    log_config.set_quiet_mode()


def setup_development_logging():
    log_config.set_development_mode()


def setup_production_logging():
    log_config.set_production_mode()


def setup_silent_logging():
    log_config.set_silent_mode()


def get_logger(name: str):
    """
    Get a logger bound to a component name

    Args:
        name: Component name, shown in the ``extra`` record dict

    Returns:
        Bound loguru logger
    """
    if not log_config._initialized:
        log_config.setup_logging()

    return logger.bind(component=name)
