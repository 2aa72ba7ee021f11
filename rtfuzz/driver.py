"""
Command-line driver for rtfuzz.

Seeds the harness, fuzzes for a fixed wall-clock budget (or until a failure
has been shrunk as far as fuel decay allows), saves and reports the result.
It can also replay a saved WAT file through a single round-trip check.

Exit status: 0 when no failing test case was found (or a replay matched),
1 when one was found, 2 when the tooling broke, 130 when interrupted.
"""

import argparse
import logging
import os
import platform
import random
import shlex
import socket
import sys
import time
from datetime import datetime
from pathlib import Path
from textwrap import dedent

from rtfuzz.artifacts import ArtifactManager
from rtfuzz.errors import DivergenceError, FuzzError
from rtfuzz.generators import GENERATORS, WatGen, make_generator
from rtfuzz.harness import FuzzHarness
from rtfuzz.metadata import generate_run_metadata
from rtfuzz.tools import (
    TRANSFORM_CMD_ENV_VAR,
    WASM_INTERP,
    WASM_OPT,
    WAT2WASM,
    CommandTransform,
    Toolchain,
    default_transform,
)
from rtfuzz.types import FailingTestCase
from rtfuzz.utils import TeeLogger, process_rss_mb

# --- Paths for fuzzer outputs (relative to current working directory) ---
TMP_DIR = Path("tmp_fuzz_run")
ARTIFACTS_DIR = Path("divergences")

EXIT_OK = 0
EXIT_FAILING_TEST_CASE = 1
EXIT_TOOLING_ERROR = 2
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="rtfuzz: differential round-trip fuzzer for wasm module transforms."
    )
    parser.add_argument(
        "--generator",
        choices=sorted(GENERATORS),
        default=WatGen.NAME,
        help="Test case generator to use. (Default: WatGen)",
    )
    parser.add_argument(
        "--fuel",
        type=int,
        default=FuzzHarness.DEFAULT_FUEL,
        help=f"Initial fuel: instruction count or random input bytes. (Default: {FuzzHarness.DEFAULT_FUEL})",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=FuzzHarness.DEFAULT_TIMEOUT_SECS,
        help=f"Wall-clock fuzzing budget in seconds. (Default: {FuzzHarness.DEFAULT_TIMEOUT_SECS})",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed for the stream of test case seeds, to reproduce a whole run.",
    )
    parser.add_argument(
        "--transform-cmd",
        type=str,
        default=None,
        help=(
            "Command for the transform under test; reads a wasm module on stdin and "
            f"writes the re-serialized module to stdout. (Default: ${TRANSFORM_CMD_ENV_VAR} "
            "or 'wasm-tools strip')"
        ),
    )
    parser.add_argument("--wat2wasm", type=str, default=WAT2WASM, help="wat2wasm executable.")
    parser.add_argument(
        "--wasm-interp", type=str, default=WASM_INTERP, help="wasm-interp executable."
    )
    parser.add_argument("--wasm-opt", type=str, default=WASM_OPT, help="wasm-opt executable.")
    parser.add_argument(
        "--scratch-dir",
        type=Path,
        default=TMP_DIR,
        help=f"Directory for the scratch files. (Default: {TMP_DIR})",
    )
    parser.add_argument(
        "--artifacts-dir",
        type=Path,
        default=ARTIFACTS_DIR,
        help=f"Directory where failing test cases are saved. (Default: {ARTIFACTS_DIR})",
    )
    parser.add_argument(
        "--replay",
        type=Path,
        default=None,
        metavar="WAT_FILE",
        help="Check a single WAT file instead of fuzzing.",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Also write all output to this file.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Suppress per-step progress lines; keep separators and findings.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log every external command line.",
    )
    return parser


def _format_run_header(args: argparse.Namespace, run_seed: int, transform_name: str) -> str:
    return dedent(f"""
        ================================================================================
        RTFUZZ RUN
        ================================================================================
        - Hostname:          {socket.gethostname()}
        - Platform:          {platform.platform()}
        - Process ID:        {os.getpid()}
        - Working Dir:       {Path.cwd()}
        - Start Time:        {datetime.now().isoformat()}
        - Command:           {" ".join(sys.argv)}
        - Generator:         {args.generator}
        - Transform:         {transform_name}
        - Initial Fuel:      {args.fuel}
        - Timeout:           {args.timeout} seconds
        - Run Seed:          {run_seed}
        ================================================================================
    """)


def _format_run_summary(
    harness: FuzzHarness, termination_reason: str, duration_secs: float
) -> str:
    stats = harness.stats
    exec_per_sec = stats.iterations / duration_secs if duration_secs > 0 else 0
    return dedent(f"""
        ================================================================================
        FUZZING RUN SUMMARY
        ================================================================================
        - Termination:       {termination_reason}
        - Total Duration:    {duration_secs:.2f}s
        - Iterations:        {stats.iterations}
        - Seeds Tried:       {stats.seeds_tried}
        - Divergences:       {stats.divergences}
        - Shrink Steps:      {stats.shrink_steps}
        - Final Fuel:        {harness.fuel}
        - Execs per Second:  {exec_per_sec:.2f}
        - Process RSS:       {process_rss_mb()} MB
        ================================================================================
    """)


def _save_failing(
    failing: FailingTestCase,
    args: argparse.Namespace,
    toolchain: Toolchain,
    transform_name: str,
) -> None:
    metadata = generate_run_metadata(
        toolchain,
        Path.cwd(),
        failing.generator,
        transform_name,
        include_wasm_opt=args.generator != WatGen.NAME,
    )
    ArtifactManager(args.artifacts_dir).save_failing_test_case(failing, metadata)


def replay(harness: FuzzHarness, wat_path: Path) -> FailingTestCase | None:
    """Run one saved WAT file through the round-trip check."""
    try:
        wat = wat_path.read_text(encoding="utf-8")
    except OSError as e:
        raise FuzzError(f"failed to read {wat_path}: {e}") from e
    print(f"[*] Replaying {wat_path}")
    try:
        harness.run_one(wat)
    except DivergenceError as e:
        harness.report(e.failing_test_case)
        return e.failing_test_case
    print("[+] Execution is the same before and after round tripping.")
    return None


def run(args: argparse.Namespace) -> int:
    if args.fuel <= 0:
        print(f"[!] Error: --fuel must be greater than zero, got {args.fuel}", file=sys.stderr)
        return EXIT_TOOLING_ERROR
    if args.timeout < 0:
        print(f"[!] Error: --timeout must not be negative, got {args.timeout}", file=sys.stderr)
        return EXIT_TOOLING_ERROR

    toolchain = Toolchain(
        wat2wasm=args.wat2wasm,
        wasm_interp=args.wasm_interp,
        wasm_opt=args.wasm_opt,
    )
    if args.transform_cmd:
        transform = CommandTransform(shlex.split(args.transform_cmd))
    else:
        transform = default_transform()

    run_seed = args.seed if args.seed is not None else random.getrandbits(64)
    print(_format_run_header(args, run_seed, transform.name))

    start_time = time.monotonic()
    termination_reason = "Completed"
    exit_code = EXIT_OK
    failing: FailingTestCase | None = None

    try:
        toolchain.check_available(needs_wasm_opt=args.generator != WatGen.NAME)
        generator = make_generator(args.generator, toolchain, scratch_dir=args.scratch_dir)
        harness = FuzzHarness(
            generator,
            transform=transform,
            toolchain=toolchain,
            scratch_dir=args.scratch_dir,
            fuel=args.fuel,
            timeout=args.timeout,
            rng=random.Random(run_seed),
        )
    except FuzzError as e:
        print(f"[!] {e.format_chain()}", file=sys.stderr)
        return EXIT_TOOLING_ERROR

    with harness:
        try:
            if args.replay is not None:
                failing = replay(harness, args.replay)
            else:
                failing = harness.run()
            if failing is not None:
                termination_reason = "Found a failing test case"
                exit_code = EXIT_FAILING_TEST_CASE
                _save_failing(failing, args, toolchain, transform.name)
        except KeyboardInterrupt:
            print("\n[!] Fuzzing stopped by user.")
            termination_reason = "KeyboardInterrupt"
            exit_code = EXIT_INTERRUPTED
        except FuzzError as e:
            termination_reason = f"Tooling error: {e.message}"
            exit_code = EXIT_TOOLING_ERROR
            print(f"\n[!!!] The fuzzing infrastructure failed.\n{e.format_chain()}", file=sys.stderr)
        finally:
            print(_format_run_summary(harness, termination_reason, time.monotonic() - start_time))

    if failing is not None:
        print("[!] Final reduced failing test case:", file=sys.stderr)
        print(failing.render(), file=sys.stderr)
    return exit_code


def main() -> int:
    """Parse command-line arguments and run the fuzzer."""
    args = build_parser().parse_args()

    if args.debug:
        logging.basicConfig(level=logging.DEBUG, format="%(message)s", stream=sys.stderr)

    if args.log_file is None and not args.quiet:
        return run(args)

    original_stdout = sys.stdout
    original_stderr = sys.stderr
    if args.log_file is not None:
        args.log_file.parent.mkdir(parents=True, exist_ok=True)
        log_path = args.log_file
    else:
        log_path = Path(os.devnull)
    print(f"[+] Starting rtfuzz. Full log will be at: {log_path}")
    tee_logger = TeeLogger(log_path, original_stdout, verbose=not args.quiet)
    sys.stdout = tee_logger
    sys.stderr = tee_logger
    try:
        return run(args)
    finally:
        tee_logger.close()
        sys.stdout = original_stdout
        sys.stderr = original_stderr


if __name__ == "__main__":
    sys.exit(main())
