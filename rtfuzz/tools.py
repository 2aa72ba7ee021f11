"""
External collaborators for the rtfuzz harness.

This module wraps the executables the harness drives but does not implement:
- Toolchain: the text assembler (wat2wasm), the reference interpreter
  (wasm-interp) and the byte-fuzz-to-text translator (wasm-opt -ttf)
- Transform: the module transformation under test, either an external
  command or an in-process callable
- ScratchFile: the reusable staging file handed to those tools
"""

import logging
import os
import shlex
import shutil
import subprocess
import tempfile
import weakref
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Sequence

from rtfuzz.errors import AssemblyError, ToolingError, TransformError

logger = logging.getLogger(__name__)

WAT2WASM = "wat2wasm"
WASM_INTERP = "wasm-interp"
WASM_OPT = "wasm-opt"

# Run every export and print calls to host imports, so the trace records
# each value passed to `host.print`.
INTERP_ARGS = ["--run-all-exports", "--host-print"]

# wat2wasm and wasm-opt both treat "-" as stdout.
STDOUT_OUTPUT_ARGS = ["-o", "-"]

DEFAULT_TRANSFORM_CMD = ["wasm-tools", "strip"]
# Overrides DEFAULT_TRANSFORM_CMD for regression tests and the CLI.
TRANSFORM_CMD_ENV_VAR = "RTFUZZ_TRANSFORM_CMD"


def _remove_scratch(path: Path) -> None:
    # Must not hold a reference to the ScratchFile, or it is never collected.
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"[!] Could not remove scratch file {path}: {e}")


class ScratchFile:
    """
    A single temporary file reused for every external tool invocation.

    The file is created once and overwritten in place on each write. It is
    removed by close(), which also runs when used as a context manager, or
    when the object is garbage collected without being closed.
    """

    def __init__(self, scratch_dir: Path | None = None, suffix: str = "") -> None:
        if scratch_dir is not None:
            try:
                scratch_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ToolingError(f"failed to create scratch directory {scratch_dir}: {e}") from e
        try:
            handle = tempfile.NamedTemporaryFile(
                dir=scratch_dir, prefix="rtfuzz_", suffix=suffix, delete=False
            )
        except OSError as e:
            raise ToolingError(f"failed to create scratch file: {e}") from e
        handle.close()
        self.path = Path(handle.name)
        self.closed = False
        self._finalizer = weakref.finalize(self, _remove_scratch, self.path)

    def _check_open(self) -> None:
        if self.closed:
            raise ValueError(f"scratch file {self.path} has already been released")

    def write_text(self, text: str) -> Path:
        self._check_open()
        try:
            self.path.write_text(text, encoding="utf-8")
        except OSError as e:
            raise ToolingError(f"failed to write to scratch file: {e}") from e
        return self.path

    def write_bytes(self, data: bytes) -> Path:
        self._check_open()
        try:
            self.path.write_bytes(data)
        except OSError as e:
            raise ToolingError(f"failed to write to scratch file: {e}") from e
        return self.path

    def close(self) -> None:
        """Release the scratch file. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        self._finalizer()

    def __enter__(self) -> "ScratchFile":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def run_tool(cmd: list[str], what: str, input_data: bytes | None = None) -> subprocess.CompletedProcess:
    """
    Run an external tool to completion and capture its output as bytes.

    Launch failures become ToolingError. The exit status is left for the
    caller to interpret.
    """
    logger.debug(f"[TOOL] {' '.join(cmd)}")
    try:
        return subprocess.run(cmd, capture_output=True, input=input_data)
    except OSError as e:
        raise ToolingError(f"failed to run {what} ({cmd[0]}): {e}") from e


def _decode(output: bytes) -> str:
    return output.decode("utf-8", errors="replace")


class Toolchain:
    """The wabt and binaryen executables the harness relies on."""

    def __init__(
        self,
        wat2wasm: str = WAT2WASM,
        wasm_interp: str = WASM_INTERP,
        wasm_opt: str = WASM_OPT,
    ) -> None:
        self.wat2wasm_path = wat2wasm
        self.wasm_interp_path = wasm_interp
        self.wasm_opt_path = wasm_opt

    def wat2wasm(self, wat_path: Path) -> bytes:
        """Assemble the WAT file at `wat_path` and return the binary module."""
        result = run_tool(
            [self.wat2wasm_path, str(wat_path), *STDOUT_OUTPUT_ARGS], "the text assembler"
        )
        if result.returncode != 0:
            raise AssemblyError(
                f"wat2wasm rejected the program:\n{_decode(result.stderr).strip()}",
                returncode=result.returncode,
                stderr=_decode(result.stderr),
            )
        return result.stdout

    def interp(self, wasm_path: Path) -> str:
        """Run the binary module at `wasm_path` and return the interpreter's trace."""
        result = run_tool(
            [self.wasm_interp_path, str(wasm_path), *INTERP_ARGS], "the reference interpreter"
        )
        if result.returncode != 0:
            stderr = _decode(result.stderr)
            raise ToolingError(
                f"wasm-interp exited with status {result.returncode}:\n{stderr.strip()}",
                returncode=result.returncode,
                stderr=stderr,
            )
        return _decode(result.stdout)

    def wasm_opt(self, input_path: Path, args: Sequence[str]) -> bytes:
        """Run wasm-opt on `input_path` with `args` and return what it emitted."""
        result = run_tool(
            [self.wasm_opt_path, str(input_path), *args, *STDOUT_OUTPUT_ARGS],
            "the byte-fuzz translator",
        )
        if result.returncode != 0:
            stderr = _decode(result.stderr)
            raise ToolingError(
                f"wasm-opt exited with status {result.returncode}:\n{stderr.strip()}",
                returncode=result.returncode,
                stderr=stderr,
            )
        return result.stdout

    def check_available(self, needs_wasm_opt: bool = False) -> None:
        """Raise ToolingError if a required executable is not on PATH."""
        required = [self.wat2wasm_path, self.wasm_interp_path]
        if needs_wasm_opt:
            required.append(self.wasm_opt_path)
        missing = [exe for exe in required if shutil.which(exe) is None]
        if missing:
            raise ToolingError(
                f"required executables not found: {', '.join(missing)}. "
                "Install wabt (wat2wasm, wasm-interp) and binaryen (wasm-opt)."
            )

    def versions(self, include_wasm_opt: bool = False) -> dict[str, str]:
        """Return the `--version` output of each tool, for reports."""
        tools = [self.wat2wasm_path, self.wasm_interp_path]
        if include_wasm_opt:
            tools.append(self.wasm_opt_path)
        return {exe: tool_version(exe) for exe in tools}


def tool_version(exe: str) -> str:
    try:
        result = subprocess.run([exe, "--version"], capture_output=True, text=True, timeout=10)
    except (OSError, subprocess.TimeoutExpired):
        return "unknown"
    output = (result.stdout or result.stderr).strip()
    return output.splitlines()[0] if output else "unknown"


class Transform(ABC):
    """The module transformation under test: binary in, binary out."""

    name = "transform"

    @abstractmethod
    def round_trip(self, wasm: bytes) -> bytes:
        """Parse `wasm` and serialize it back, raising TransformError on failure."""


class CommandTransform(Transform):
    """
    A transform implemented by an external command.

    The module is written to the command's stdin and the re-serialized module
    is read from its stdout. A non-zero exit status is a transform failure.
    """

    def __init__(self, argv: Sequence[str] = DEFAULT_TRANSFORM_CMD) -> None:
        if not argv:
            raise ValueError("transform command must not be empty")
        self.argv = list(argv)
        self.name = Path(self.argv[0]).name

    def round_trip(self, wasm: bytes) -> bytes:
        result = run_tool(self.argv, "the transform under test", input_data=wasm)
        if result.returncode != 0:
            raise TransformError(
                f"{' '.join(self.argv)} exited with status {result.returncode}:\n"
                f"{_decode(result.stderr).strip()}"
            )
        return result.stdout


class FunctionTransform(Transform):
    """A transform implemented by a Python callable `bytes -> bytes`."""

    def __init__(self, func: Callable[[bytes], bytes], name: str | None = None) -> None:
        self.func = func
        self.name = name or getattr(func, "__name__", "function")

    def round_trip(self, wasm: bytes) -> bytes:
        try:
            return self.func(wasm)
        except TransformError:
            raise
        except Exception as e:
            raise TransformError(f"{self.name} raised {type(e).__name__}: {e}") from e


def default_transform() -> CommandTransform:
    """Build the transform named by $RTFUZZ_TRANSFORM_CMD, or the default command."""
    command = os.environ.get(TRANSFORM_CMD_ENV_VAR)
    if command:
        return CommandTransform(shlex.split(command))
    return CommandTransform(DEFAULT_TRANSFORM_CMD)
