from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from ..errors import CommandError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CmdResult:
    argv: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def command_line(self) -> str:
        return shlex.join(self.argv)


def run_cmd(
    argv: Sequence[str],
    *,
    check: bool = True,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[str] = None,
    interactive: bool = False,
    dry_run: bool = False,
) -> CmdResult:
    """Run a host command; every invocation is logged as `CMD ...`.

    Interactive commands inherit the terminal and have no captured output.
    With dry_run nothing is executed and a successful result is returned.
    """

    planned = CmdResult(argv=list(argv), returncode=0)
    logger.info("CMD %s", planned.command_line)
    if dry_run:
        return planned

    pipe = None if interactive else subprocess.PIPE
    completed = subprocess.run(
        planned.argv,
        cwd=cwd,
        env={**os.environ, **(env or {})},
        stdout=pipe,
        stderr=pipe,
        text=True,
    )
    res = CmdResult(
        argv=planned.argv,
        returncode=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
    )

    for stream, text in (("STDOUT", res.stdout), ("STDERR", res.stderr)):
        if text:
            logger.debug("%s %s", stream, text.strip())

    if check and not res.ok:
        raise CommandError(
            f"Command failed ({res.returncode}): {res.command_line}\n{res.stderr}".rstrip(),
            returncode=res.returncode,
        )
    return res
