"""
The differential round-trip harness.

This module provides the FuzzHarness class, which drives the
generate -> assemble -> execute -> round trip -> execute -> compare cycle
and shrinks any failure it finds by fuel decay: once a seed produces a
divergence, the same seed is retried with 10% less fuel until the failure
stops reproducing or fuel reaches its floor of 1. The last failing test
case observed is the minimized result.
"""

import random
import sys
import time
from pathlib import Path

from rtfuzz.errors import DivergenceError, FuzzError, ToolingError, TransformError
from rtfuzz.generators import TestCaseGenerator
from rtfuzz.tools import ScratchFile, Toolchain, Transform, default_transform
from rtfuzz.types import FailingTestCase
from rtfuzz.utils import RunStats

SEPARATOR = "-" * 53

SEED_BITS = 64


class FuzzHarness:
    """
    Compares a test case's execution in the reference interpreter before and
    after round tripping it through the transform under test.

    The harness owns one scratch file for its whole lifetime; every tool
    invocation stages its input there. Release it with close(), or use the
    harness as a context manager. Two harnesses never share a scratch file.
    """

    DEFAULT_FUEL = 64
    DEFAULT_TIMEOUT_SECS = 5
    FUEL_FLOOR = 1

    def __init__(
        self,
        generator: TestCaseGenerator,
        transform: Transform | None = None,
        toolchain: Toolchain | None = None,
        scratch_dir: Path | None = None,
        fuel: int = DEFAULT_FUEL,
        timeout: float = DEFAULT_TIMEOUT_SECS,
        rng: random.Random | None = None,
    ) -> None:
        """
        Initialize the harness.

        Args:
            generator: Test case generator to draw programs from
            transform: The transform under test (default: $RTFUZZ_TRANSFORM_CMD
                or `wasm-tools strip`)
            toolchain: wat2wasm / wasm-interp wrapper
            scratch_dir: Directory for the scratch file (default: system temp dir)
            fuel: Initial fuel level, must be greater than zero
            timeout: Wall-clock budget for run(), in seconds
            rng: Source of fresh seeds for run()
        """
        self.generator = generator
        self.transform = transform or default_transform()
        self.toolchain = toolchain or Toolchain()
        self.fuel = self.DEFAULT_FUEL
        self.set_fuel(fuel)
        self.set_timeout(timeout)
        self.rng = rng or random.Random()
        self.stats = RunStats()
        self.scratch = ScratchFile(scratch_dir)

    # ------------------------------------------------------------------
    # Configuration and resource lifetime
    # ------------------------------------------------------------------

    def set_fuel(self, fuel: int) -> "FuzzHarness":
        """Set the fuel level. `fuel` must be greater than zero."""
        if fuel <= 0:
            raise ValueError(f"fuel must be greater than zero, got {fuel}")
        self.fuel = fuel
        return self

    def set_timeout(self, timeout: float) -> "FuzzHarness":
        if timeout < 0:
            raise ValueError(f"timeout must not be negative, got {timeout}")
        self.timeout = timeout
        return self

    def close(self) -> None:
        self.scratch.close()

    def __enter__(self) -> "FuzzHarness":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Pipeline steps
    # ------------------------------------------------------------------

    def gen_wat(self, seed: int) -> str:
        print(f"[GEN] {self.generator.NAME}: seed={seed}, fuel={self.fuel}")
        return self.generator.generate(seed, self.fuel)

    def wat2wasm(self, wat: str) -> bytes:
        path = self.scratch.write_text(wat)
        return self.toolchain.wat2wasm(path)

    def interp(self, wasm: bytes) -> str:
        if not self.generator.SHOULD_INTERPRET:
            return ""
        path = self.scratch.write_bytes(wasm)
        print("[INTERP] Running module in the reference interpreter")
        return self.toolchain.interp(path)

    def round_trip(self, wasm: bytes) -> bytes:
        print(f"[ROUNDTRIP] Parsing and re-serializing through {self.transform.name}")
        return self.transform.round_trip(wasm)

    def run_one(self, wat: str, seed: int | None = None, fuel: int | None = None) -> None:
        """
        Check one test case.

        Returns normally when the traces before and after the round trip are
        identical. Raises DivergenceError when they differ, when the
        transform fails, or when the round-tripped module no longer runs.
        Other FuzzErrors mean the tooling broke.
        """
        try:
            wasm = self.wat2wasm(wat)
        except FuzzError as e:
            raise e.add_context("failed to assemble the test case")

        try:
            expected = self.interp(wasm)
        except FuzzError as e:
            raise e.add_context("failed to interpret the original module")

        try:
            round_tripped = self.round_trip(wasm)
        except TransformError as e:
            actual = f"<round trip failed: {e}>"
        else:
            try:
                actual = self.interp(round_tripped)
            except ToolingError as e:
                if e.returncode is None:
                    raise e.add_context("failed to interpret the round-tripped module")
                actual = f"<interpreter failed on the round-tripped module: {e.message}>"

        if expected == actual:
            return

        raise DivergenceError(
            FailingTestCase(
                wat=wat,
                generator=self.generator.NAME,
                expected=expected,
                actual=actual,
                seed=seed,
                fuel=fuel,
            )
        )

    # ------------------------------------------------------------------
    # Fuzzing loop
    # ------------------------------------------------------------------

    def new_seed(self) -> int:
        self.stats.seeds_tried += 1
        return self.rng.getrandbits(SEED_BITS)

    @classmethod
    def shrunk_fuel(cls, fuel: int) -> int:
        """Fuel for the next shrink step: 10% less, and always at least one less."""
        return max(cls.FUEL_FLOOR, fuel - max(1, fuel // 10))

    def report(self, failing: FailingTestCase) -> None:
        print("[!!!] ROUND-TRIP DIVERGENCE DETECTED!", file=sys.stderr)
        print(failing.render(), file=sys.stderr)

    def run(self) -> FailingTestCase | None:
        """
        Generate test cases until one diverges or the timeout passes.

        Returns the reduced failing test case, or None if no divergence was
        found within the time budget.
        """
        deadline = time.monotonic() + self.timeout
        seed = self.new_seed()
        failing: FailingTestCase | None = None

        while True:
            print(SEPARATOR)
            self.stats.iterations += 1
            self.stats.fuel_history.append(self.fuel)

            try:
                wat = self.gen_wat(seed)
                self.run_one(wat, seed=seed, fuel=self.fuel)
            except DivergenceError as e:
                failing = e.failing_test_case
                self.stats.divergences += 1
                self.report(failing)

                # Reduce the test case with another iteration at smaller
                # fuel, or stop if we are out of fuel to shed.
                if self.fuel > self.FUEL_FLOOR:
                    self.set_fuel(self.shrunk_fuel(self.fuel))
                    self.stats.shrink_steps += 1
                    print(f"[~] Shrinking: retrying seed {seed} with fuel {self.fuel}.")
                    continue
                print("[+] Fuel is at its floor; returning the failing test case.")
                return failing
            except FuzzError as e:
                raise e.add_context(f"while fuzzing {self.generator.NAME} seed={seed} fuel={self.fuel}")

            # We reduced fuel as far as we could, so return the last failing
            # test case.
            if failing is not None:
                print(
                    f"[+] Fuel {self.fuel} no longer reproduces the failure; "
                    f"returning the test case from fuel {failing.fuel}."
                )
                return failing

            # Used all of our time, and didn't find any failing test cases.
            if time.monotonic() >= deadline:
                print(f"[+] No failing test case found in {self.timeout}s.")
                return None

            # This seed did not produce a failing test case, so choose a new one.
            seed = self.new_seed()


def assert_round_trip_execution_is_same(
    generator: TestCaseGenerator | type[TestCaseGenerator],
    wat: str,
    transform: Transform | None = None,
    toolchain: Toolchain | None = None,
    scratch_dir: Path | None = None,
) -> None:
    """
    Assert that `wat` has the same execution trace before and after round
    tripping it through the transform.

    Raises AssertionError carrying the rendered failing test case otherwise.
    """
    if isinstance(generator, type):
        generator = generator(toolchain)
    with FuzzHarness(
        generator, transform=transform, toolchain=toolchain, scratch_dir=scratch_dir
    ) as harness:
        try:
            harness.run_one(wat)
        except DivergenceError as e:
            raise AssertionError(e.failing_test_case.render()) from None
