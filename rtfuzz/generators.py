"""
Test case generators for the rtfuzz harness.

A generator turns a (seed, fuel) pair into WAT source, deterministically:
the harness shrinks a failing case by lowering fuel while holding the seed
fixed, so the same pair must always produce byte-identical text.

- WatGen: synthesizes a random, type-correct instruction sequence by
  simulating an operand stack.
- WasmOptTtf: feeds random bytes to `wasm-opt -ttf` and keeps the output
  only when wat2wasm can assemble it.
"""

import logging
import random
from abc import ABC, abstractmethod
from pathlib import Path

from rtfuzz.errors import AssemblyError, ToolingError
from rtfuzz.tools import ScratchFile, Toolchain
from rtfuzz.types import ValType

logger = logging.getLogger(__name__)

I32_MIN = -(2**31)
I32_MAX = 2**31 - 1

# Operators available per value type. Arity-1 choices always include `drop`,
# so a type only needs entries here to take part in generation.
CONST_OPS = {ValType.I32: "i32.const"}
UNARY_OPS = {ValType.I32: ("i32.popcnt",)}
BINARY_OPS = {ValType.I32: ("i32.add", "i32.mul")}

WAT_PREFIX = """\
(module
  (import "host" "print" (func (param i32) (result i32)))
  (func (export "f")
"""
WAT_SUFFIX = "  ))"

# The host import is function index 0; it takes and returns one i32.
HOST_CALL = "call 0"

# wasm-opt and wat2wasm disagree on the sign-extension operators.
WASM_OPT_TTF_ARGS = ["-ttf", "--emit-text", "--disable-sign-ext"]
WASM_OPT_TTF_MAX_ATTEMPTS = 1000


class TestCaseGenerator(ABC):
    """Anything that can generate WAT test cases for fuzzing."""

    # Not a unittest class, despite the name.
    __test__ = False

    # Shown in failure reports and in generated regression tests.
    NAME: str = ""

    # Whether the harness should run the test case in the reference
    # interpreter before and after the round trip. wasm-opt can generate
    # imports that wasm-interp cannot provide, so some generators only
    # check that the transform does not fail.
    SHOULD_INTERPRET: bool = True

    @abstractmethod
    def generate(self, seed: int, fuel: int) -> str:
        """Generate WAT deterministically from the given RNG seed and fuel."""


class _StackProgram:
    """Emission state for one WatGen program: the RNG and the output lines."""

    def __init__(self, rng: random.Random) -> None:
        self.rng = rng
        self.lines: list[str] = []

    def instr(self, operator: str, *immediates: str) -> None:
        self.lines.append("    " + " ".join((operator, *immediates)))

    def gen_instructions(self, fuel: int) -> None:
        if fuel <= 0:
            raise ValueError(f"fuel must be greater than zero, got {fuel}")

        stack: list[ValType] = []
        for _ in range(fuel):
            self.op(stack)
            if stack:
                # Pass the value on top of the stack through the host import.
                self.instr(HOST_CALL)

        for _ in stack:
            self.instr(HOST_CALL)
            self.instr("drop")

    def op(self, stack: list[ValType]) -> None:
        arity = self.rng.randrange(min(3, len(stack) + 1))
        if arity == 0:
            self.op_0(stack)
        elif arity == 1:
            self.op_1(stack.pop(), stack)
        else:
            b = stack.pop()
            a = stack.pop()
            self.op_2(a, b, stack)

    def op_0(self, stack: list[ValType]) -> None:
        if self.rng.randrange(2) == 0:
            value = self.rng.randint(I32_MIN, I32_MAX)
            self.instr(CONST_OPS[ValType.I32], str(value))
            stack.append(ValType.I32)
        else:
            self.instr("nop")

    def op_1(self, operand: ValType, stack: list[ValType]) -> None:
        unary = UNARY_OPS[operand]
        choice = self.rng.randrange(len(unary) + 1)
        if choice == 0:
            self.instr("drop")
        else:
            self.instr(unary[choice - 1])
            stack.append(operand)

    def op_2(self, a: ValType, b: ValType, stack: list[ValType]) -> None:
        # Both operands share a type while I32 is the only one.
        binary = BINARY_OPS[a]
        self.instr(binary[self.rng.randrange(len(binary))])
        stack.append(a)

    def render(self) -> str:
        return WAT_PREFIX + "".join(line + "\n" for line in self.lines) + WAT_SUFFIX


class WatGen(TestCaseGenerator):
    """A simple stack-typed WAT generator."""

    NAME = "WatGen"
    SHOULD_INTERPRET = True

    def __init__(self, toolchain: Toolchain | None = None) -> None:
        # No external tools are needed; accepted so every generator can be
        # built the same way.
        self.toolchain = toolchain

    def generate(self, seed: int, fuel: int) -> str:
        return self.generate_with_rng(random.Random(seed), fuel)

    @staticmethod
    def generate_with_rng(rng: random.Random, fuel: int) -> str:
        program = _StackProgram(rng)
        program.gen_instructions(fuel)
        return program.render()


class WasmOptTtf(TestCaseGenerator):
    """Use `wasm-opt -ttf` to generate fuzzing test cases."""

    NAME = "WasmOptTtf"
    SHOULD_INTERPRET = False

    def __init__(
        self,
        toolchain: Toolchain | None = None,
        scratch_dir: Path | None = None,
        max_attempts: int = WASM_OPT_TTF_MAX_ATTEMPTS,
    ) -> None:
        self.toolchain = toolchain or Toolchain()
        self.scratch_dir = scratch_dir
        self.max_attempts = max_attempts

    def generate(self, seed: int, fuel: int) -> str:
        if fuel <= 0:
            raise ValueError(f"fuel must be greater than zero, got {fuel}")
        rng = random.Random(seed)

        with ScratchFile(self.scratch_dir, suffix=".bin") as input_file, ScratchFile(
            self.scratch_dir, suffix=".wat"
        ) as wat_file:
            for _ in range(self.max_attempts):
                input_file.write_bytes(rng.randbytes(fuel))
                wat = self.toolchain.wasm_opt(input_file.path, WASM_OPT_TTF_ARGS)
                try:
                    text = wat.decode("utf-8")
                except UnicodeDecodeError:
                    logger.debug(f"[GEN] wasm-opt emitted non-UTF-8 text (seed={seed}); retrying")
                    continue

                # Only keep programs that wat2wasm can handle.
                wat_file.write_text(text)
                try:
                    self.toolchain.wat2wasm(wat_file.path)
                except AssemblyError:
                    continue
                return text

        raise ToolingError(
            f"wasm-opt produced no text accepted by wat2wasm in {self.max_attempts} attempts "
            f"(seed={seed}, fuel={fuel})"
        )


GENERATORS: dict[str, type[TestCaseGenerator]] = {
    WatGen.NAME: WatGen,
    WasmOptTtf.NAME: WasmOptTtf,
}


def make_generator(
    name: str, toolchain: Toolchain | None = None, scratch_dir: Path | None = None
) -> TestCaseGenerator:
    """Build the generator registered under `name`."""
    try:
        generator_cls = GENERATORS[name]
    except KeyError:
        raise ValueError(
            f"unknown generator {name!r}; choose from {', '.join(sorted(GENERATORS))}"
        ) from None
    if generator_cls is WasmOptTtf:
        return WasmOptTtf(toolchain, scratch_dir=scratch_dir)
    return generator_cls(toolchain)
