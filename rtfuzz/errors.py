"""
Error types for the rtfuzz harness.

Three kinds of failure flow through the harness:

- ToolingError: the fuzzing infrastructure broke (a scratch file could not be
  written, an external tool could not be launched or exited with an error).
  These end the run.
- AssemblyError: the text assembler rejected a program. Fatal for a fuzzing
  iteration, but WasmOptTtf catches it to retry with fresh input.
- DivergenceError: the round trip changed the observable behaviour of a
  program. This is the finding the fuzzer exists to produce; the harness
  catches it to drive shrinking.

Every error carries a `context` list of human-readable operation
descriptions, outermost first, rendered as a cause chain.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from rtfuzz.types import FailingTestCase


class FuzzError(Exception):
    """Base class for every error raised by rtfuzz."""

    def __init__(self, message: str, context: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.message = message
        self.context: list[str] = list(context)

    def add_context(self, description: str) -> "FuzzError":
        """Record an outer operation description and return self for re-raising."""
        self.context.insert(0, description)
        return self

    def chain(self) -> list[str]:
        """Return the cause chain, outermost operation first."""
        return self.context + [self.message]

    def format_chain(self) -> str:
        lines = ["Error:"]
        lines.extend(f"  - {link}" for link in self.chain())
        return "\n".join(lines)

    def __str__(self) -> str:
        if not self.context:
            return self.message
        return ": ".join(self.chain())


class ToolingError(FuzzError):
    """An external tool or the scratch file failed; the run cannot continue."""

    def __init__(
        self,
        message: str,
        context: Iterable[str] = (),
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message, context)
        self.returncode = returncode
        self.stderr = stderr


class AssemblyError(ToolingError):
    """The text-to-binary assembler rejected a program."""


class TransformError(FuzzError):
    """The transform under test failed to parse or re-serialize a module."""


class DivergenceError(FuzzError):
    """Round tripping changed the program's execution trace."""

    def __init__(self, failing_test_case: "FailingTestCase", context: Iterable[str] = ()) -> None:
        super().__init__(
            f"{failing_test_case.generator} test case diverged after round tripping",
            context,
        )
        self.failing_test_case = failing_test_case
