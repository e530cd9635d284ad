"""Async subprocess helper shared by the git cloner and image builders."""

import asyncio
from pathlib import Path
from typing import Optional, Sequence, Type

import structlog

logger = structlog.get_logger(__name__)


def redact(text: str, secrets: Sequence[str]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, "***")
    return text


async def run_command(
    cmd: list[str],
    error_cls: Type[Exception],
    cwd: Optional[Path] = None,
    env: Optional[dict[str, str]] = None,
    timeout: Optional[float] = None,
    secrets: Sequence[str] = (),
) -> str:
    """
    Run a command and return its combined output.

    Args:
        cmd: Executable and arguments
        error_cls: Exception raised on non-zero exit or timeout
        cwd: Working directory (optional)
        env: Full environment for the child (optional)
        timeout: Seconds before the child is killed
        secrets: Strings masked in logs and error messages

    Raises:
        error_cls: If the command fails or times out
    """
    shown = redact(" ".join(cmd), secrets)
    logger.debug("command_started", cmd=shown, cwd=str(cwd) if cwd else None)

    process = await asyncio.create_subprocess_exec(
        *cmd,
        cwd=cwd,
        env=env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        stdout_bytes, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise error_cls(f"{cmd[0]} timed out after {timeout:.0f}s")

    output = redact(stdout_bytes.decode("utf-8", errors="replace"), secrets)
    if process.returncode != 0:
        tail = "\n".join(output.strip().splitlines()[-20:])
        raise error_cls(f"{cmd[0]} exited with {process.returncode}: {tail}")
    return output
