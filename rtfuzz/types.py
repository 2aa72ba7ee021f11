"""Shared type definitions for rtfuzz.

ValType is the tag set the WAT synthesizer uses to keep its abstract operand
stack type-correct. FailingTestCase is the minimal reproducible
counterexample the harness produces; it is frozen so that shrinking replaces
it wholesale instead of editing it in place.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

SCISSORS = "----------------8<----------------8<----------------8<----------------"


class ValType(Enum):
    """Value types tracked on the abstract operand stack during generation."""

    I32 = "i32"


def _python_literal(text: str) -> str:
    """Return a Python string literal for `text` that keeps it readable when possible."""
    if '"""' not in text and not text.endswith(("\\", '"')):
        return f'r"""{text}"""'
    return repr(text)


@dataclass(frozen=True)
class FailingTestCase:
    """
    A wasm test case whose execution in the reference interpreter differs
    before and after round tripping it through the transform under test.
    """

    # The WAT source of the test case.
    wat: str
    # Name of the test case generator that created it.
    generator: str
    # Interpreter output *before* the round trip.
    expected: str
    # Interpreter output *after* the round trip.
    actual: str
    # Seed and fuel that produced `wat`, when it came from a generator.
    seed: int | None = None
    fuel: int | None = None

    def regression_test(self) -> str:
        """Return a standalone unittest method that replays this test case."""
        return (
            f"from rtfuzz.generators import {self.generator}\n"
            "from rtfuzz.harness import assert_round_trip_execution_is_same\n"
            "\n"
            "def test_name(self):\n"
            f"    assert_round_trip_execution_is_same({self.generator}, "
            f"{_python_literal(self.wat)})\n"
        )

    def render(self) -> str:
        origin = ""
        if self.seed is not None:
            origin = f" (seed={self.seed}, fuel={self.fuel})"
        return (
            f"Found a failing test case!{origin}\n"
            "\n"
            f"{self.wat}\n"
            "\n"
            "BEFORE round tripping:\n"
            "\n"
            f"{self.expected}\n"
            "\n"
            "AFTER round tripping:\n"
            "\n"
            f"{self.actual}\n"
            "\n"
            "Here is a standalone test case:\n"
            "\n"
            f"{SCISSORS}\n"
            f"{self.regression_test()}"
            f"{SCISSORS}\n"
        )

    def __str__(self) -> str:
        return self.render()
