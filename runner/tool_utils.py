"""
External tool execution utilities.

Runs a command line in a work directory, captures its output into the run's
artifacts and turns every failure mode (non-zero exit, timeout, missing
expected output) into an ExternalToolError. Nothing is retried.
"""

import logging
import shlex
import subprocess
import time
from pathlib import Path
from typing import Any, Iterable, Optional

from tiltstack_backend.errors import ExternalToolError

logger = logging.getLogger(__name__)


def build_command(template: str, **fields: Any) -> list[str]:
    """Split a command template and fill {placeholders} per argument."""
    try:
        return [tok.format(**{k: str(v) for k, v in fields.items()}) for tok in shlex.split(template)]
    except (KeyError, IndexError, ValueError) as e:
        raise ExternalToolError(f"invalid command template {template!r}: {e}", original_error=e)


def run_tool(
    cmd: list[str],
    work_dir: Path,
    artifacts_dir: Path,
    log_name: str,
    timeout_s: float = 3600,
    expected_outputs: Optional[Iterable[Path]] = None,
) -> dict:
    """Run cmd and return its metadata; raises ExternalToolError on any failure."""
    work_dir.mkdir(parents=True, exist_ok=True)
    artifacts_dir.mkdir(parents=True, exist_ok=True)

    log_path = artifacts_dir / log_name
    start_time = time.time()
    try:
        result = subprocess.run(
            cmd,
            cwd=str(work_dir),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout_s,
        )
    except subprocess.TimeoutExpired as e:
        raise ExternalToolError(
            f"{cmd[0]} timed out after {timeout_s:g}s",
            meta={"error": "timeout", "elapsed_seconds": time.time() - start_time, "cmd": cmd},
            original_error=e,
        )
    except OSError as e:
        raise ExternalToolError(
            f"{cmd[0]} could not be started: {e}",
            meta={"error": str(e), "elapsed_seconds": time.time() - start_time, "cmd": cmd},
            original_error=e,
        )

    elapsed = time.time() - start_time
    output = result.stdout or ""
    log_path.write_text(output, encoding="utf-8", errors="replace")

    meta = {
        "returncode": result.returncode,
        "elapsed_seconds": elapsed,
        "log_file": str(log_path),
        "cmd": cmd,
    }
    if result.returncode != 0:
        raise ExternalToolError(f"{cmd[0]} exited with status {result.returncode} (see {log_path})", meta=meta)

    missing = [str(p) for p in (expected_outputs or []) if not Path(p).exists()]
    if missing:
        meta["missing_outputs"] = missing
        raise ExternalToolError(f"{cmd[0]} did not produce {', '.join(missing)}", meta=meta)

    logger.debug(f"{cmd[0]} finished in {elapsed:.2f}s")
    return meta
