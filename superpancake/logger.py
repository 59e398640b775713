"""
Logging for SuperPancake.

Components accept any object with ``info``, ``warning`` and ``error``
methods (a ``logging.Logger`` qualifies). Without one they fall back to
``ConsoleLogger``, which prints short prefixed lines to stdout.
"""

from typing import Protocol


class PancakeLogger(Protocol):
    """Protocol for optional logger interface."""

    def info(self, message: str) -> None:
        """Log info message."""
        ...

    def warning(self, message: str) -> None:
        """Log warning message."""
        ...

    def error(self, message: str) -> None:
        """Log error message."""
        ...


class ConsoleLogger:
    """
    Print-based logger.

    Info lines are only printed in verbose mode; warnings and errors always.
    """

    def __init__(self, verbose: bool = False, prefix: str = "[SuperPancake]") -> None:
        self.verbose = verbose
        self.prefix = prefix

    def info(self, message: str) -> None:
        if self.verbose:
            print(f"{self.prefix} {message}")

    def warning(self, message: str) -> None:
        print(f"⚠️  {self.prefix} {message}")

    def error(self, message: str) -> None:
        print(f"❌ {self.prefix} {message}")


def resolve_logger(logger: PancakeLogger | None, verbose: bool = False) -> PancakeLogger:
    """Return ``logger`` or a console logger when none was given."""
    if logger is not None:
        return logger
    return ConsoleLogger(verbose=verbose)
