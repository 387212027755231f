"""Shared async command utilities for netbinder network modules."""

from __future__ import annotations

import asyncio
import logging

from netbinder.errors import DeadlineExceeded

logger = logging.getLogger(__name__)


async def run_cmd(
    cmd: list[str],
    *,
    stdin: bytes | None = None,
    env: dict[str, str] | None = None,
    timeout: float | None = None,
) -> tuple[int, str, str]:
    """Run a command asynchronously.

    Args:
        cmd: Command and arguments as list
        stdin: Optional bytes fed to the process on stdin
        env: Optional environment (replaces the inherited one)
        timeout: Seconds to wait before killing the process

    Returns:
        Tuple of (return_code, stdout, stderr)

    Raises:
        DeadlineExceeded: If the process did not finish within timeout
    """
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.PIPE if stdin is not None else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(stdin), timeout)
    except asyncio.TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
        logger.error(f"Command timed out after {timeout}s: {' '.join(cmd)}")
        raise DeadlineExceeded(cmd[0], timeout or 0.0)
    return (
        process.returncode or 0,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


async def ovs_vsctl(*args: str, timeout: float | None = None) -> tuple[int, str, str]:
    """Run ovs-vsctl command.

    Args:
        args: Arguments to ovs-vsctl
        timeout: Seconds to wait for the command

    Returns:
        Tuple of (return_code, stdout, stderr)
    """
    return await run_cmd(["ovs-vsctl", *args], timeout=timeout)


async def ovs_ofctl(
    *args: str,
    protocol: str | None = None,
    timeout: float | None = None,
) -> tuple[int, str, str]:
    """Run ovs-ofctl command, optionally pinned to an OpenFlow version."""
    cmd = ["ovs-ofctl"]
    if protocol:
        cmd += ["-O", protocol]
    return await run_cmd([*cmd, *args], timeout=timeout)
