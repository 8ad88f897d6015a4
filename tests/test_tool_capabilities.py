import shlex
import sys

import numpy as np
import pytest

from runner.tool_capabilities import CommandCapabilities
from runner.tool_utils import build_command, run_tool
from tiltstack_backend.errors import ExternalToolError

_FIRST_FRAME = """
import sys
from astropy.io import fits
data = fits.getdata(sys.argv[1])
fits.writeto(sys.argv[2], data[0], overwrite=True)
"""


def _python_command(script_path) -> str:
    return f"{shlex.quote(sys.executable)} {shlex.quote(str(script_path))} {{input}} {{output}}"


def test_build_command_fills_placeholders():
    cmd = build_command("mc --in {input} --out={output} -v", input="a.fits", output="b.fits")
    assert cmd == ["mc", "--in", "a.fits", "--out=b.fits", "-v"]


def test_build_command_unknown_placeholder():
    with pytest.raises(ExternalToolError):
        build_command("mc {gain}", input="a")


def test_run_tool_missing_program(tmp_path):
    with pytest.raises(ExternalToolError):
        run_tool(["/nonexistent/tiltstack-tool"], tmp_path / "work", tmp_path / "artifacts", "x.log")


def test_run_tool_nonzero_exit(tmp_path):
    with pytest.raises(ExternalToolError) as exc:
        run_tool([sys.executable, "-c", "raise SystemExit(3)"], tmp_path / "work", tmp_path / "artifacts", "x.log")
    assert exc.value.meta["returncode"] == 3
    assert (tmp_path / "artifacts" / "x.log").exists()


def test_run_tool_timeout(tmp_path):
    with pytest.raises(ExternalToolError) as exc:
        run_tool(
            [sys.executable, "-c", "import time; time.sleep(30)"],
            tmp_path / "work",
            tmp_path / "artifacts",
            "x.log",
            timeout_s=0.5,
        )
    assert exc.value.meta["error"] == "timeout"
    assert exc.value.meta["elapsed_seconds"] < 30


def test_run_tool_missing_output(tmp_path):
    with pytest.raises(ExternalToolError) as exc:
        run_tool(
            [sys.executable, "-c", "print('hi')"],
            tmp_path / "work",
            tmp_path / "artifacts",
            "x.log",
            expected_outputs=[tmp_path / "work" / "out.fits"],
        )
    assert exc.value.meta["missing_outputs"]


def test_command_correct_round_trip(tmp_path):
    script = tmp_path / "first_frame.py"
    script.write_text(_FIRST_FRAME, encoding="utf-8")
    caps = CommandCapabilities(
        command=_python_command(script),
        work_dir=tmp_path / "work",
        artifacts_dir=tmp_path / "artifacts",
        timeout_s=120,
    )
    substack = np.stack([np.full((4, 4), v, dtype=np.float32) for v in (7.0, 8.0, 9.0)])
    out = caps.correct(substack)
    assert out.shape == (4, 4)
    assert np.allclose(out, 7.0)
    assert (tmp_path / "artifacts" / "correct_0001.log").exists()


def test_command_required():
    with pytest.raises(ExternalToolError):
        CommandCapabilities(command=" ", work_dir=".", artifacts_dir=".")
