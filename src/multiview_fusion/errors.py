"""
Exceptions raised by the fusion kernel.

Configuration and shape problems are raised before any voxel is touched.
Failures inside a worker are not wrapped; the original exception propagates.
"""


class FusionError(Exception):
    """Base class for fusion errors."""


class InvalidConfigurationError(FusionError, ValueError):
    """A fusion plan, blending range or call argument is not usable."""


class ShapeMismatchError(FusionError, ValueError):
    """A weight field or mask does not match the shape of its volume."""
