"""Participant-side runtime: process execution and the coordinator client."""

from __future__ import annotations

from .client import SessionClient, build_ws_url
from .executor import generate_test_case, run_program, scoped_input_file

__all__ = [
    "SessionClient",
    "build_ws_url",
    "generate_test_case",
    "run_program",
    "scoped_input_file",
]
