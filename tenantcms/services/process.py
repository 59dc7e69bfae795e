"""Run external commands (certbot, nginx) with a bounded timeout."""

import asyncio
import logging
import shlex

from tenantcms.core.exceptions import CommandFailed

logger = logging.getLogger(__name__)


async def run_command(argv: list[str] | str, *, timeout: float) -> str:
    """Run a command and return its combined output.

    Raises CommandFailed on a non-zero exit, a missing binary or a timeout.
    """
    if isinstance(argv, str):
        argv = shlex.split(argv)
    logger.info("Running command: %s", " ".join(argv))

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as exc:
        raise CommandFailed(argv, 127, str(exc)) from exc

    try:
        out, _ = await asyncio.wait_for(proc.communicate(), timeout)
    except TimeoutError as exc:
        proc.kill()
        await proc.wait()
        raise CommandFailed(argv, None) from exc

    output = out.decode(errors="replace") if out else ""
    if proc.returncode != 0:
        raise CommandFailed(argv, proc.returncode, output)
    return output
