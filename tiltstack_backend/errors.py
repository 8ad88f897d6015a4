"""
Error taxonomy for tiltstack

Every fatal condition of the pipeline is raised as a TiltStackError subclass.
Errors log themselves once on construction so that a failure is visible in
the run log even when the caller only reports the message.
"""

import logging
import traceback
from typing import Any, Optional


class TiltStackError(Exception):
    """Base class for all pipeline errors"""
    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error
        self.log_error()

    def log_error(self):
        logger = logging.getLogger('tiltstack.errors')
        logger.error(f"{type(self).__name__}: {self}")
        if self.original_error:
            logger.error(f"Original Error: {self.original_error}")
            logger.debug(traceback.format_exc())


class InputValidationError(TiltStackError):
    """Missing input file or malformed record"""
    pass


class EmptyInputError(InputValidationError):
    """No usable segments or entries remain after filtering"""
    pass


class InvalidConfigurationError(InputValidationError):
    """Configuration values that make the computation undefined"""
    pass


class CountMismatchError(TiltStackError):
    """A produced count differs from the expected one"""
    def __init__(self, stage: str, expected: int, actual: int, detail: str = ""):
        self.stage = stage
        self.expected = int(expected)
        self.actual = int(actual)
        msg = f"{stage}: expected {self.expected} items, got {self.actual}"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)


class AssemblyCountMismatchError(CountMismatchError):
    pass


class AlignmentCountMismatchError(CountMismatchError):
    pass


class ExternalToolError(TiltStackError):
    """An external capability failed, timed out or produced no output"""
    def __init__(self, message: str, meta: Optional[dict[str, Any]] = None, original_error: Optional[Exception] = None):
        self.meta = dict(meta or {})
        super().__init__(message, original_error=original_error)


class PipelineCancelledError(TiltStackError):
    pass
