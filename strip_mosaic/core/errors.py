"""
Exceptions raised by the mosaic pipeline
"""

from pathlib import Path
from typing import Optional, Union


class MosaicError(Exception):
    """Base class for all mosaic failures"""


class ConfigurationError(MosaicError, ValueError):
    """Invalid run parameters; raised before any image is opened"""


class AlignmentError(MosaicError):
    """A pair of neighbouring images could not be aligned"""


class RasterIOError(MosaicError, OSError):
    """An input could not be read or the output could not be written"""

    def __init__(self, message: str, path: Optional[Union[str, Path]] = None):
        super().__init__(message)
        self.path = Path(path) if path is not None else None

    def __str__(self) -> str:
        message = super().__str__()
        if self.path is not None and str(self.path) not in message:
            return f"{message} ({self.path})"
        return message
