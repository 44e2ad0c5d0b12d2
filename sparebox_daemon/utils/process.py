"""
Async subprocess execution with timeout + output cap.
Never raises: spawn errors, timeouts and oversized output come back in the result dict.
"""
from __future__ import annotations

import asyncio
import contextlib

DEFAULT_TIMEOUT = 120  # seconds
OUTPUT_LIMIT = 5 * 1024 * 1024  # 5MB
READ_CHUNK = 64 * 1024


def _kill(proc: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError):
        proc.kill()


async def run_subprocess(
    cmd: list[str],
    timeout: float = DEFAULT_TIMEOUT,
    output_limit: int = OUTPUT_LIMIT,
) -> dict:
    """
    Run cmd without a shell and collect its output:
    - Timeout enforced (process killed)
    - stdout/stderr read incrementally; past output_limit bytes the
      process is killed and "overflowed" is set
    - returncode -1 when the process could not be started or timed out
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (OSError, ValueError) as exc:
        return {
            "returncode": -1,
            "stdout": "",
            "stderr": str(exc),
            "timed_out": False,
            "overflowed": False,
        }

    overflowed = False

    async def read(stream: asyncio.StreamReader) -> bytes:
        nonlocal overflowed
        buf = bytearray()
        while True:
            chunk = await stream.read(READ_CHUNK)
            if not chunk:
                return bytes(buf)
            if len(buf) + len(chunk) > output_limit:
                buf.extend(chunk[: output_limit - len(buf)])
                overflowed = True
                _kill(proc)
                return bytes(buf)
            buf.extend(chunk)

    async def collect() -> tuple[bytes, bytes]:
        stdout_b, stderr_b = await asyncio.gather(read(proc.stdout), read(proc.stderr))
        await proc.wait()
        return stdout_b, stderr_b

    try:
        stdout_b, stderr_b = await asyncio.wait_for(collect(), timeout=timeout)
    except asyncio.TimeoutError:
        _kill(proc)
        await proc.wait()
        return {
            "returncode": -1,
            "stdout": "",
            "stderr": f"Timeout after {timeout}s",
            "timed_out": True,
            "overflowed": False,
        }

    stderr = stderr_b.decode("utf-8", errors="replace")
    if overflowed:
        stderr = f"Output exceeded {output_limit} bytes\n{stderr}"
    return {
        "returncode": proc.returncode,
        "stdout": stdout_b.decode("utf-8", errors="replace"),
        "stderr": stderr,
        "timed_out": False,
        "overflowed": overflowed,
    }
