"""
tiltstack backend

Bookkeeping and geometry core: segment extraction, order reconstruction,
stack assembly, stretch reference generation and neighbour averaging.
"""

from .errors import (
    AlignmentCountMismatchError,
    AssemblyCountMismatchError,
    EmptyInputError,
    ExternalToolError,
    InputValidationError,
    InvalidConfigurationError,
    PipelineCancelledError,
    TiltStackError,
)

__all__ = [
    "AlignmentCountMismatchError",
    "AssemblyCountMismatchError",
    "EmptyInputError",
    "ExternalToolError",
    "InputValidationError",
    "InvalidConfigurationError",
    "PipelineCancelledError",
    "TiltStackError",
]
