"""Exceptions raised by the segmentation pipeline."""


class MitoGraphError(Exception):
    """Base class for all pipeline errors"""


class UnsupportedFormatError(MitoGraphError, ValueError):
    """Voxel depth other than 8-bit or 16-bit unsigned"""


class MissingInputError(MitoGraphError, FileNotFoundError):
    """Source volume is absent or cannot be read"""


class InvalidConfigurationError(MitoGraphError, ValueError):
    """Configuration value that cannot be repaired by clamping"""


class StageError(MitoGraphError):
    """A pipeline stage failed for a given file"""

    def __init__(self, file_name: str, stage: str, cause: Exception):
        self.file_name = file_name
        self.stage = stage
        self.cause = cause
        super().__init__(f"{file_name}: stage '{stage}' failed: {cause}")
