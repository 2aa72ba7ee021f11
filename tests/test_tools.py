#!/usr/bin/env python3
"""
Tests for the external tool wrappers in rtfuzz/tools.py.

Subprocesses are mocked; no wasm tools need to be installed.
"""

import gc
import os
import shutil
import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from rtfuzz.errors import AssemblyError, ToolingError, TransformError
from rtfuzz.tools import (
    DEFAULT_TRANSFORM_CMD,
    INTERP_ARGS,
    CommandTransform,
    FunctionTransform,
    ScratchFile,
    Toolchain,
    default_transform,
    tool_version,
)


def completed(cmd, returncode=0, stdout=b"", stderr=b""):
    return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)


def writes_output(contents: bytes, returncode: int = 0, stderr: bytes = b""):
    """A subprocess.run side effect for a tool writing `contents` to stdout."""

    def side_effect(cmd, **kwargs):
        stdout = contents if returncode == 0 else b""
        return completed(cmd, returncode, stdout, stderr)

    return side_effect


class TestScratchFile(unittest.TestCase):
    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def test_created_in_directory(self):
        with ScratchFile(self.temp_dir / "nested") as scratch:
            self.assertEqual(scratch.path.parent, self.temp_dir / "nested")
            self.assertTrue(scratch.path.exists())

    def test_overwritten_in_place(self):
        with ScratchFile(self.temp_dir) as scratch:
            first = scratch.write_text("(module)")
            second = scratch.write_bytes(b"\0asm")
            self.assertEqual(first, second)
            self.assertEqual(scratch.path.read_bytes(), b"\0asm")
            scratch.write_text("(module)")
            self.assertEqual(scratch.path.read_text(), "(module)")

    def test_close_removes_file_and_is_idempotent(self):
        scratch = ScratchFile(self.temp_dir)
        path = scratch.path
        scratch.close()
        scratch.close()
        self.assertFalse(path.exists())
        with self.assertRaises(ValueError):
            scratch.write_text("late")

    def test_removed_when_dropped_without_close(self):
        scratch = ScratchFile(self.temp_dir)
        path = scratch.path
        self.assertTrue(path.exists())
        del scratch
        gc.collect()
        self.assertFalse(path.exists())

    def test_write_failure_is_tooling_error(self):
        with ScratchFile(self.temp_dir) as scratch:
            with patch.object(Path, "write_text", side_effect=OSError("disk full")):
                with self.assertRaises(ToolingError) as cm:
                    scratch.write_text("x")
        self.assertIn("failed to write to scratch file", str(cm.exception))


class TestToolchain(unittest.TestCase):
    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.toolchain = Toolchain()
        self.input_path = self.temp_dir / "input"
        self.input_path.write_text("(module)")

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    @patch("rtfuzz.tools.subprocess.run")
    def test_wat2wasm_returns_binary(self, mock_run):
        mock_run.side_effect = writes_output(b"\0asm\x01\0\0\0")
        self.assertEqual(self.toolchain.wat2wasm(self.input_path), b"\0asm\x01\0\0\0")
        cmd = mock_run.call_args.args[0]
        self.assertEqual(cmd, ["wat2wasm", str(self.input_path), "-o", "-"])

    @patch("rtfuzz.tools.subprocess.run")
    def test_wat2wasm_rejection_is_assembly_error(self, mock_run):
        mock_run.side_effect = writes_output(b"", returncode=1, stderr=b"unexpected token")
        with self.assertRaises(AssemblyError) as cm:
            self.toolchain.wat2wasm(self.input_path)
        self.assertEqual(cm.exception.returncode, 1)
        self.assertIn("unexpected token", cm.exception.stderr)

    @patch("rtfuzz.tools.subprocess.run")
    def test_tools_create_no_files(self, mock_run):
        mock_run.side_effect = writes_output(b"\0asm")
        before = sorted(self.temp_dir.iterdir())
        with patch("rtfuzz.tools.tempfile") as mock_tempfile:
            self.toolchain.wat2wasm(self.input_path)
            self.toolchain.wasm_opt(self.input_path, ["-ttf"])
        self.assertEqual(mock_tempfile.mock_calls, [])
        self.assertEqual(sorted(self.temp_dir.iterdir()), before)

    @patch("rtfuzz.tools.subprocess.run")
    def test_interp_returns_stdout(self, mock_run):
        mock_run.return_value = completed([], 0, b"f() => \n")
        self.assertEqual(self.toolchain.interp(self.input_path), "f() => \n")
        cmd = mock_run.call_args.args[0]
        self.assertEqual(cmd, ["wasm-interp", str(self.input_path), *INTERP_ARGS])

    @patch("rtfuzz.tools.subprocess.run")
    def test_interp_failure_records_returncode(self, mock_run):
        mock_run.return_value = completed([], 1, b"", b"invalid module")
        with self.assertRaises(ToolingError) as cm:
            self.toolchain.interp(self.input_path)
        self.assertEqual(cm.exception.returncode, 1)

    @patch("rtfuzz.tools.subprocess.run", side_effect=FileNotFoundError("wasm-interp"))
    def test_launch_failure_has_no_returncode(self, mock_run):
        with self.assertRaises(ToolingError) as cm:
            self.toolchain.interp(self.input_path)
        self.assertIsNone(cm.exception.returncode)
        self.assertIn("reference interpreter", str(cm.exception))

    @patch("rtfuzz.tools.subprocess.run")
    def test_wasm_opt_passes_args(self, mock_run):
        mock_run.side_effect = writes_output(b"(module)")
        out = self.toolchain.wasm_opt(self.input_path, ["-ttf", "--emit-text"])
        self.assertEqual(out, b"(module)")
        cmd = mock_run.call_args.args[0]
        self.assertEqual(
            cmd, ["wasm-opt", str(self.input_path), "-ttf", "--emit-text", "-o", "-"]
        )

    @patch("rtfuzz.tools.subprocess.run")
    def test_wasm_opt_failure(self, mock_run):
        mock_run.side_effect = writes_output(b"", returncode=2, stderr=b"crash")
        with self.assertRaises(ToolingError) as cm:
            self.toolchain.wasm_opt(self.input_path, [])
        self.assertNotIsInstance(cm.exception, AssemblyError)

    @patch("rtfuzz.tools.shutil.which")
    def test_check_available(self, mock_which):
        mock_which.side_effect = lambda exe: None if exe == "wasm-opt" else f"/usr/bin/{exe}"
        self.toolchain.check_available()
        with self.assertRaises(ToolingError) as cm:
            self.toolchain.check_available(needs_wasm_opt=True)
        self.assertIn("wasm-opt", str(cm.exception))

    @patch("rtfuzz.tools.subprocess.run")
    def test_tool_version(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess([], 0, "1.0.34\n", "")
        self.assertEqual(tool_version("wat2wasm"), "1.0.34")
        mock_run.side_effect = FileNotFoundError()
        self.assertEqual(tool_version("wat2wasm"), "unknown")


class TestTransforms(unittest.TestCase):
    @patch("rtfuzz.tools.subprocess.run")
    def test_command_transform_pipes_module(self, mock_run):
        mock_run.return_value = completed([], 0, b"\0asm-out")
        transform = CommandTransform(["walrus-roundtrip", "--emit"])
        self.assertEqual(transform.round_trip(b"\0asm-in"), b"\0asm-out")
        self.assertEqual(mock_run.call_args.args[0], ["walrus-roundtrip", "--emit"])
        self.assertEqual(mock_run.call_args.kwargs["input"], b"\0asm-in")
        self.assertEqual(transform.name, "walrus-roundtrip")

    @patch("rtfuzz.tools.subprocess.run")
    def test_command_transform_failure(self, mock_run):
        mock_run.return_value = completed([], 101, b"", b"panicked at 'invalid section'")
        with self.assertRaises(TransformError) as cm:
            CommandTransform(["roundtrip"]).round_trip(b"\0asm")
        self.assertIn("invalid section", str(cm.exception))

    def test_command_transform_requires_argv(self):
        with self.assertRaises(ValueError):
            CommandTransform([])

    def test_function_transform_wraps_exceptions(self):
        def broken(wasm):
            raise IndexError("section out of range")

        transform = FunctionTransform(broken)
        self.assertEqual(transform.name, "broken")
        with self.assertRaises(TransformError) as cm:
            transform.round_trip(b"")
        self.assertIn("IndexError", str(cm.exception))

    def test_function_transform_returns_result(self):
        self.assertEqual(FunctionTransform(bytes.upper, "upper").round_trip(b"ab"), b"AB")

    def test_default_transform_from_environment(self):
        with patch.dict(os.environ, {"RTFUZZ_TRANSFORM_CMD": "my-tool --round-trip"}):
            self.assertEqual(default_transform().argv, ["my-tool", "--round-trip"])
        with patch.dict(os.environ, {}, clear=True):
            self.assertEqual(default_transform().argv, DEFAULT_TRANSFORM_CMD)


if __name__ == "__main__":
    unittest.main()
