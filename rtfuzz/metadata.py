"""
Capture metadata about the fuzzing environment.

The metadata is written next to every saved failing test case so a report
can be matched to the tool versions and host that produced it. Replaying a
test case is only deterministic against the same external tool versions.
"""

import os
import platform
import shutil
import sys
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any

import psutil

from rtfuzz.tools import Toolchain


def get_rtfuzz_version() -> str:
    try:
        return version("rtfuzz")
    except PackageNotFoundError:
        return "unknown"


def get_hardware_info(output_dir: Path) -> dict[str, Any]:
    """Return CPU, memory and free disk figures for this host."""
    try:
        disk_free_gb = round(shutil.disk_usage(output_dir).free / (1024**3), 2)
    except OSError:
        disk_free_gb = None
    return {
        "cpu_count_logical": psutil.cpu_count(logical=True),
        "cpu_count_physical": psutil.cpu_count(logical=False),
        "total_ram_gb": round(psutil.virtual_memory().total / (1024**3), 2),
        "disk_free_gb": disk_free_gb,
    }


def generate_run_metadata(
    toolchain: Toolchain,
    output_dir: Path,
    generator_name: str,
    transform_name: str,
    include_wasm_opt: bool = False,
) -> dict[str, Any]:
    """Collect environment, tool and hardware metadata for a run."""
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": {
            "hostname": platform.node(),
            "os": platform.platform(),
            "python_version": sys.version.replace("\n", " "),
            "rtfuzz_version": get_rtfuzz_version(),
            "pid": os.getpid(),
        },
        "tools": toolchain.versions(include_wasm_opt=include_wasm_opt),
        "configuration": {
            "generator": generator_name,
            "transform": transform_name,
        },
        "hardware": get_hardware_info(output_dir),
    }
