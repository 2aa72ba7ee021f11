"""
Tests for shared types and errors (rtfuzz/types.py, rtfuzz/errors.py).
"""

import ast
import unittest
from dataclasses import FrozenInstanceError

from rtfuzz.errors import AssemblyError, DivergenceError, FuzzError, ToolingError
from rtfuzz.types import SCISSORS, FailingTestCase, ValType

WAT = """\
(module
  (func (export "f")
    nop
  ))"""


def make_case(**overrides) -> FailingTestCase:
    fields = dict(wat=WAT, generator="WatGen", expected="before\n", actual="after\n")
    fields.update(overrides)
    return FailingTestCase(**fields)


class TestValType(unittest.TestCase):
    def test_i32(self):
        self.assertEqual(ValType.I32.value, "i32")
        self.assertEqual(list(ValType), [ValType.I32])


class TestFailingTestCase(unittest.TestCase):
    def test_is_frozen(self):
        case = make_case()
        with self.assertRaises(FrozenInstanceError):
            case.wat = "(module)"

    def test_render_contains_source_and_both_traces(self):
        text = str(make_case())
        self.assertIn("Found a failing test case!", text)
        self.assertIn(WAT, text)
        self.assertIn("BEFORE round tripping:\n\nbefore\n", text)
        self.assertIn("AFTER round tripping:\n\nafter\n", text)
        self.assertEqual(text.count(SCISSORS), 2)

    def test_render_mentions_seed_and_fuel_when_known(self):
        self.assertIn("(seed=7, fuel=3)", make_case(seed=7, fuel=3).render())
        self.assertNotIn("seed=", make_case().render())

    def test_regression_test_embeds_literal_source(self):
        stub = make_case().regression_test()
        self.assertIn("from rtfuzz.generators import WatGen", stub)
        self.assertIn("assert_round_trip_execution_is_same(WatGen, ", stub)

        tree = ast.parse(stub)
        func = tree.body[-1]
        self.assertEqual(func.name, "test_name")
        call = func.body[0].value
        self.assertEqual(ast.literal_eval(call.args[1]), WAT)

    def test_regression_test_survives_awkward_source(self):
        awkward = ['(module (data "\\00\\01"))', '(module)\n;; """', "(module) \\", ';; "x"']
        for wat in awkward:
            stub = make_case(wat=wat, generator="WasmOptTtf").regression_test()
            call = ast.parse(stub).body[-1].body[0].value
            self.assertEqual(ast.literal_eval(call.args[1]), wat)


class TestErrors(unittest.TestCase):
    def test_context_chain_is_outermost_first(self):
        err = ToolingError("permission denied")
        err.add_context("failed to write to scratch file")
        err.add_context("while fuzzing WatGen seed=1 fuel=2")
        self.assertEqual(
            err.chain(),
            [
                "while fuzzing WatGen seed=1 fuel=2",
                "failed to write to scratch file",
                "permission denied",
            ],
        )
        self.assertEqual(
            err.format_chain(),
            "Error:\n"
            "  - while fuzzing WatGen seed=1 fuel=2\n"
            "  - failed to write to scratch file\n"
            "  - permission denied",
        )

    def test_str_without_context_is_message(self):
        self.assertEqual(str(FuzzError("boom")), "boom")
        self.assertEqual(str(FuzzError("boom", ["doing it"])), "doing it: boom")

    def test_add_context_returns_self(self):
        err = FuzzError("x")
        self.assertIs(err.add_context("y"), err)

    def test_assembly_error_is_tooling_error(self):
        err = AssemblyError("bad text", returncode=1, stderr="bad text")
        self.assertIsInstance(err, ToolingError)
        self.assertEqual(err.returncode, 1)

    def test_divergence_carries_failing_case(self):
        case = make_case()
        err = DivergenceError(case)
        self.assertIs(err.failing_test_case, case)
        self.assertIn("WatGen", str(err))


if __name__ == "__main__":
    unittest.main()
