"""Local command helper."""

import asyncio


async def run_cmd(cmd: list[str], cwd: str | None = None) -> tuple[int, str, str]:
    """Run a local command asynchronously.

    Args:
        cmd: Command and arguments as list
        cwd: Working directory for the command

    Returns:
        Tuple of (return_code, stdout, stderr)
    """
    process = await asyncio.create_subprocess_exec(
        *cmd,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await process.communicate()
    return (
        process.returncode or 0,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )
