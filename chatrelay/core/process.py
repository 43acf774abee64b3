"""
Child process cleanup shared by the CLI providers and the Bash tool.

Children are started with `start_new_session=True` so the whole group
(the shell plus anything it spawned) can be signalled at once.
"""

from __future__ import annotations

import asyncio
import os
import signal

KILL_GRACE_SECONDS = 0.5


async def terminate_process_group(proc: asyncio.subprocess.Process | None) -> None:
    """SIGTERM the process group, then SIGKILL after a short grace period."""
    if proc is None or proc.returncode is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=KILL_GRACE_SECONDS)
        return
    except asyncio.TimeoutError:
        pass
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        return
    await proc.wait()
