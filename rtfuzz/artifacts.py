"""
Saving failing test cases to disk.

The ArtifactManager writes each minimized failing test case into its own
directory under the artifacts root, grouped by generator:

    <root>/<generator>/failing_<seed>_fuel<fuel>/
        test_case.wat   the source, ready for `rtfuzz --replay`
        report.txt      the rendered report with the regression test stub
        trace.diff      unified diff of the trace before and after
        metadata.json   seed, fuel, traces and environment metadata
"""

from __future__ import annotations

import difflib
import hashlib
import json
import sys
from pathlib import Path
from typing import Any

from rtfuzz.types import FailingTestCase


class ArtifactManager:
    """Manages saving of failing test case artifacts."""

    def __init__(self, artifacts_dir: Path) -> None:
        self.artifacts_dir = artifacts_dir

    def artifact_dir_for(self, failing: FailingTestCase) -> Path:
        if failing.seed is None:
            digest = hashlib.sha256(failing.wat.encode("utf-8")).hexdigest()[:12]
            name = f"failing_replay_{digest}"
        else:
            name = f"failing_{failing.seed}_fuel{failing.fuel}"
        return self.artifacts_dir / failing.generator / name

    @staticmethod
    def trace_diff(failing: FailingTestCase) -> str:
        diff = difflib.unified_diff(
            failing.expected.splitlines(keepends=True),
            failing.actual.splitlines(keepends=True),
            fromfile="before_round_trip",
            tofile="after_round_trip",
        )
        return "".join(diff)

    def save_failing_test_case(
        self, failing: FailingTestCase, metadata: dict[str, Any] | None = None
    ) -> Path | None:
        """
        Save all artifacts for a failing test case.

        Returns the directory written, or None if saving failed. A failure to
        save is reported but does not hide the finding, which has already
        been printed in full.
        """
        dest_dir = self.artifact_dir_for(failing)
        record = {
            "generator": failing.generator,
            "seed": failing.seed,
            "fuel": failing.fuel,
            "expected": failing.expected,
            "actual": failing.actual,
            "metadata": metadata or {},
        }
        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
            (dest_dir / "test_case.wat").write_text(failing.wat, encoding="utf-8")
            (dest_dir / "report.txt").write_text(failing.render(), encoding="utf-8")
            (dest_dir / "trace.diff").write_text(self.trace_diff(failing), encoding="utf-8")
            (dest_dir / "metadata.json").write_text(
                json.dumps(record, indent=2, default=str), encoding="utf-8"
            )
        except OSError as e:
            print(f"  [!] CRITICAL: Could not save failing test case: {e}", file=sys.stderr)
            return None

        print(f"  [+] Failing test case saved to {dest_dir}", file=sys.stderr)
        return dest_dir
