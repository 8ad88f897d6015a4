"""
Capabilities backed by external command-line tools.

CommandCapabilities hands each segment to an external motion-correction
program through FITS files in the run's work directory; everything else is
done in process by ArrayCapabilities.
"""

import itertools
import threading
from pathlib import Path

import numpy as np

from tiltstack_backend.capabilities import ArrayCapabilities
from tiltstack_backend.errors import ExternalToolError
from tiltstack_backend.stack_io import read_stack, write_stack

from .tool_utils import build_command, run_tool


class CommandCapabilities(ArrayCapabilities):
    """
    correct() runs `command` with {input} and {output} placeholders.

    The command receives the raw substack as a FITS cube and must write a
    single corrected frame to {output}.
    """

    def __init__(self, command: str, work_dir: Path, artifacts_dir: Path, timeout_s: float = 3600, **kwargs):
        super().__init__(**kwargs)
        if not str(command or "").strip():
            raise ExternalToolError("no correction command configured")
        self.command = command
        self.work_dir = Path(work_dir)
        self.artifacts_dir = Path(artifacts_dir)
        self.timeout_s = float(timeout_s)
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def correct(self, substack: np.ndarray) -> np.ndarray:
        with self._lock:
            n = next(self._counter)
        in_path = self.work_dir / f"correct_{n:04d}_in.fits"
        out_path = self.work_dir / f"correct_{n:04d}_out.fits"
        write_stack(in_path, np.asarray(substack, dtype=np.float32))

        cmd = build_command(self.command, input=in_path, output=out_path)
        run_tool(
            cmd,
            work_dir=self.work_dir,
            artifacts_dir=self.artifacts_dir,
            log_name=f"correct_{n:04d}.log",
            timeout_s=self.timeout_s,
            expected_outputs=[out_path],
        )

        frames, _ = read_stack(out_path)
        if len(frames) != 1:
            raise ExternalToolError(f"correction output {out_path} holds {len(frames)} frames, expected 1")
        return frames[0]
