from __future__ import annotations

"""
Client-side execution contract: run the generator and the program under test.

Neither helper interprets the bytes it produces. A non-zero exit status of
the program under test is ordinary output; only a failure to start it is an
error.
"""

import asyncio
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

from diffroom.session.errors import ExecutionStartFailure, GenerationFailure

LOGGER = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]
INPUT_PREFIX = "test-input-"
INPUT_SUFFIX = ".txt"


async def generate_test_case(script: str, *, cwd: Optional[PathLike] = None) -> bytes:
    """Run ``script`` through the shell and return its stdout verbatim."""
    LOGGER.debug("running generator: %s", script)
    try:
        proc = await asyncio.create_subprocess_shell(
            script,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd is not None else None,
        )
    except OSError as exc:
        raise GenerationFailure(f"could not start generator: {exc}") from exc
    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        detail = stderr.decode("utf-8", "replace").strip() or f"exit status {proc.returncode}"
        LOGGER.error("generator failed (exit %s): %s", proc.returncode, detail)
        raise GenerationFailure(f"Execution Error: {detail}")
    return stdout


@contextmanager
def scoped_input_file(data: bytes, *, workdir: Optional[PathLike] = None) -> Iterator[Path]:
    """Write ``data`` to a uniquely named file that is removed on exit."""
    base = Path(workdir) if workdir is not None else Path.cwd()
    with tempfile.NamedTemporaryFile(
        "wb", prefix=INPUT_PREFIX, suffix=INPUT_SUFFIX, dir=base, delete=False
    ) as tmp:
        tmp.write(data)
        path = Path(tmp.name)
    try:
        yield path
    finally:
        path.unlink(missing_ok=True)


async def run_program(
    program: PathLike,
    test_case: bytes,
    *,
    workdir: Optional[PathLike] = None,
) -> bytes:
    """Run ``program <input file>`` and return stdout and stderr merged."""
    with scoped_input_file(test_case, workdir=workdir) as input_path:
        try:
            proc = await asyncio.create_subprocess_exec(
                str(program),
                str(input_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            LOGGER.error("could not start %s: %s", program, exc)
            raise ExecutionStartFailure(f"Failed to start program: {exc}") from exc
        output, _ = await proc.communicate()
    if proc.returncode:
        LOGGER.info("%s exited with status %s", program, proc.returncode)
    return output


__all__ = ["generate_test_case", "run_program", "scoped_input_file"]
