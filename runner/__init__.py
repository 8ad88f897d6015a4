"""
tiltstack runner package

Phase orchestration, event stream, logging setup and external tool glue
around the tiltstack_backend core.
"""

from .events import EventStream
from .phases import PHASES, make_capabilities, run_phases

__all__ = ["EventStream", "PHASES", "make_capabilities", "run_phases"]
