"""rtfuzz: differential round-trip fuzzing for wasm module transforms."""

__version__ = "0.1.0"
