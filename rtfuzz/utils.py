"""
This module contains generic helpers for the rtfuzz harness.

It includes the tee logger used for run logs and the per-run statistics
collected by the harness.
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, TextIO

import psutil


class TeeLogger:
    """
    A file-like object that writes to both a file and another stream
    (like the original stdout), and flushes immediately.

    When verbose=False, per-step detail lines (generation and round-trip
    progress) are suppressed from both console and file. Findings, the
    iteration separator and warnings are always written.
    """

    # Lines matching these prefixes are suppressed in quiet mode.
    _QUIET_SUPPRESS_PREFIXES: tuple[str, ...] = (
        "[GEN]",
        "[ROUNDTRIP]",
        "[INTERP]",
    )

    def __init__(
        self,
        file_path: str | Path,
        original_stream: TextIO,
        verbose: bool = True,
    ) -> None:
        """Initialize the logger with a file path and an existing stream.

        Args:
            file_path: Path to the log file.
            original_stream: The original stream (e.g., sys.stdout) to tee to.
            verbose: If False, suppress detail-level messages. Default True.
        """
        self.original_stream = original_stream
        self.log_file = open(file_path, "w", encoding="utf-8")
        self.verbose = verbose
        # print() sends the trailing "\n" as a separate write; swallow it
        # after a suppressed line.
        self._last_was_suppressed = False

    def _is_suppressed(self, message: str) -> bool:
        if self.verbose:
            return False
        return message.lstrip().startswith(self._QUIET_SUPPRESS_PREFIXES)

    def write(self, message: str) -> int:
        """Write a message to both the original stream and the log file."""
        if message == "\n" and self._last_was_suppressed:
            self._last_was_suppressed = False
            return 0
        if message and self._is_suppressed(message):
            self._last_was_suppressed = True
            return 0
        self._last_was_suppressed = False

        self.original_stream.write(message)
        self.log_file.write(message)
        self.flush()
        return len(message)

    def flush(self) -> None:
        self.original_stream.flush()
        self.log_file.flush()

    def close(self) -> None:
        self.flush()
        self.log_file.close()

    @property
    def encoding(self) -> str:
        return getattr(self.original_stream, "encoding", "utf-8")

    def isatty(self) -> bool:
        return hasattr(self.original_stream, "isatty") and self.original_stream.isatty()

    def fileno(self) -> int:
        """Return the file descriptor of the original stream.

        Raises OSError if the original stream doesn't have a file descriptor.
        """
        if hasattr(self.original_stream, "fileno"):
            return self.original_stream.fileno()
        raise OSError("TeeLogger does not have a file descriptor")


@dataclass
class RunStats:
    """Counters for one harness run."""

    iterations: int = 0
    divergences: int = 0
    shrink_steps: int = 0
    seeds_tried: int = 0
    fuel_history: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def process_rss_mb() -> float:
    """Resident set size of this process, in MiB."""
    return round(psutil.Process().memory_info().rss / (1024 * 1024), 2)
