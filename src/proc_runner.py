import logging
import shlex
import subprocess
from typing import List, Optional, Sequence, Type

from ingest_errors import IngestError, StepTimeout

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUTS = {
    "check": 15,
    "mount": 60,
    "copy": 3600,
    "transcode": 7200,
    "clear": 600,
    "unmount": 60,
}


class CommandRunner:
    """
    Runs external tools (mount, cp, ffmpeg, ...) with stdout and stderr merged.

    Failures are raised as the caller's error class with the combined output
    attached; an expired timeout kills the child and raises StepTimeout.
    """

    def _execute(self, cmd: List[str], timeout: Optional[float]) -> subprocess.CompletedProcess:
        return subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout,
            check=False,
        )

    def run(
        self,
        cmd: Sequence[str],
        *,
        step: str,
        label: Optional[str] = None,
        timeout: Optional[float] = None,
        error_cls: Type[IngestError] = IngestError,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        cmd = [str(c) for c in cmd]
        logger.debug("Running %s: %s", step, shlex.join(cmd))
        try:
            res = self._execute(cmd, timeout)
        except subprocess.TimeoutExpired as e:
            output = e.output or ""
            if isinstance(output, bytes):
                output = output.decode("utf-8", errors="replace")
            raise StepTimeout(
                f"{step} timed out after {timeout}s: {shlex.join(cmd)}",
                label=label,
                step=step,
                output=output,
            ) from e
        except FileNotFoundError as e:
            raise error_cls(f"{step} failed, command not found: {cmd[0]}", label=label, step=step) from e
        logger.debug("%s rc=%s output=%s", step, res.returncode, (res.stdout or "").strip())
        if check and res.returncode != 0:
            raise error_cls(
                f"{step} failed (exit status {res.returncode}): {shlex.join(cmd)}",
                label=label,
                step=step,
                output=res.stdout or "",
            )
        return res

    def succeeds(
        self,
        cmd: Sequence[str],
        *,
        step: str,
        label: Optional[str] = None,
        timeout: Optional[float] = None,
        error_cls: Type[IngestError] = IngestError,
    ) -> bool:
        """Run a probe command and report whether it exited 0."""
        res = self.run(cmd, step=step, label=label, timeout=timeout, error_cls=error_cls, check=False)
        return res.returncode == 0
