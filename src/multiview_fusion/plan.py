"""
Geometry and configuration shared by the fusion kernel.

All spatial tuples are ordered like the numpy arrays they describe, i.e. ZYX
for 3D volumes. Anisotropy correction always applies to the first axis.
"""

import math
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from multiview_fusion.errors import InvalidConfigurationError

DEFAULT_BLENDING_RANGE = 40.0
DEFAULT_FALLBACK_THRESHOLD = 0.2


def round_half_up(value: float) -> int:
    """Round to the nearest integer, ties away from minus infinity."""
    return int(math.floor(value + 0.5))


class PixelType(str, Enum):
    """Output sample types supported by the combiner."""

    FLOAT32 = "float32"
    UINT16 = "uint16"
    UINT8 = "uint8"

    @classmethod
    def parse(cls, value: Any) -> "PixelType":
        if isinstance(value, Enum):
            value = value.value
        elif not isinstance(value, str):
            try:
                value = np.dtype(value).name
            except TypeError:
                pass
        try:
            return cls(str(value).lower())
        except ValueError:
            choices = ", ".join(p.value for p in cls)
            raise InvalidConfigurationError(
                f"Unsupported pixel type {value!r}, expected one of: {choices}"
            ) from None

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(self.value)

    @property
    def bytes_per_pixel(self) -> int:
        return self.dtype.itemsize


class CacheStrategy(str, Enum):
    """How the fused volume is backed while it is being produced."""

    VIRTUAL = "virtual"
    CACHED = "cached"
    PRECOMPUTED = "precomputed"

    @classmethod
    def parse(cls, value: Any) -> "CacheStrategy":
        try:
            return cls(value.value if isinstance(value, Enum) else str(value).lower())
        except ValueError:
            choices = ", ".join(c.value for c in cls)
            raise InvalidConfigurationError(
                f"Unsupported cache strategy {value!r}, expected one of: {choices}"
            ) from None


@dataclass(frozen=True)
class BoundingBox:
    """
    Integer box in world coordinates with inclusive corners.

    Parameters
    ----------
    min_corner : sequence of int
        Smallest voxel coordinate per axis.
    max_corner : sequence of int
        Largest voxel coordinate per axis (inclusive).
    """

    min_corner: Tuple[int, ...]
    max_corner: Tuple[int, ...]

    def __post_init__(self):
        lo = tuple(int(v) for v in self.min_corner)
        hi = tuple(int(v) for v in self.max_corner)
        if len(lo) != len(hi) or len(lo) == 0:
            raise InvalidConfigurationError(
                "Bounding box corners must have the same, non-zero dimensionality."
            )
        if any(h < l for l, h in zip(lo, hi)):
            raise InvalidConfigurationError(
                f"Bounding box {lo} -> {hi} has zero size."
            )
        object.__setattr__(self, "min_corner", lo)
        object.__setattr__(self, "max_corner", hi)

    @property
    def ndim(self) -> int:
        return len(self.min_corner)

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(h - l + 1 for l, h in zip(self.min_corner, self.max_corner))

    @property
    def num_pixels(self) -> int:
        return int(np.prod(self.shape, dtype=np.int64))

    @classmethod
    def of_volume(cls, volume: "Volume") -> "BoundingBox":
        """Smallest integer box enclosing every voxel center of `volume`."""
        lo = [int(math.floor(o)) for o in volume.origin]
        hi = [
            int(math.ceil(o + (n - 1) * s))
            for o, n, s in zip(volume.origin, volume.shape, volume.voxel_size)
        ]
        return cls(tuple(lo), tuple(hi))

    @classmethod
    def union(cls, boxes: Iterable["BoundingBox"]) -> "BoundingBox":
        """Smallest box containing all `boxes`."""
        boxes = list(boxes)
        if not boxes:
            raise InvalidConfigurationError("Cannot build the union of zero bounding boxes.")
        lo = np.min([b.min_corner for b in boxes], axis=0)
        hi = np.max([b.max_corner for b in boxes], axis=0)
        return cls(tuple(int(v) for v in lo), tuple(int(v) for v in hi))

    @classmethod
    def parse(cls, text: str) -> "BoundingBox":
        """Parse ``"zmin,ymin,xmin,zmax,ymax,xmax"``."""
        try:
            values = [int(v) for v in text.split(",")]
        except ValueError:
            raise InvalidConfigurationError(f"Cannot parse bounding box {text!r}") from None
        if len(values) % 2 != 0:
            raise InvalidConfigurationError(
                f"Bounding box {text!r} needs the same number of min and max values."
            )
        half = len(values) // 2
        return cls(tuple(values[:half]), tuple(values[half:]))

    def __str__(self) -> str:
        return f"{list(self.min_corner)} -> {list(self.max_corner)}"


@dataclass(frozen=True, eq=False)
class Volume:
    """
    A sampled volume placed in the common world frame.

    Parameters
    ----------
    data : NDArray
        Samples, ZYX for 3D data.
    origin : sequence of float, optional
        World position of voxel (0, 0, 0). Defaults to the world origin.
    voxel_size : sequence of float, optional
        World units per voxel along each axis. Defaults to 1.
    """

    data: NDArray
    origin: Optional[Tuple[float, ...]] = None
    voxel_size: Optional[Tuple[float, ...]] = None

    def __post_init__(self):
        data = np.asarray(self.data)
        origin = (0.0,) * data.ndim if self.origin is None else tuple(float(o) for o in self.origin)
        voxel_size = (
            (1.0,) * data.ndim if self.voxel_size is None
            else tuple(float(s) for s in self.voxel_size)
        )
        if len(origin) != data.ndim or len(voxel_size) != data.ndim:
            raise InvalidConfigurationError(
                f"Volume of rank {data.ndim} needs {data.ndim} origin and voxel_size values."
            )
        if any(s <= 0 for s in voxel_size):
            raise InvalidConfigurationError("voxel_size must be > 0 along every axis.")
        object.__setattr__(self, "data", data)
        object.__setattr__(self, "origin", origin)
        object.__setattr__(self, "voxel_size", voxel_size)

    @property
    def shape(self) -> Tuple[int, ...]:
        return self.data.shape

    @property
    def ndim(self) -> int:
        return self.data.ndim

    @property
    def bounding_box(self) -> BoundingBox:
        return BoundingBox.of_volume(self)

    def local_indices(self, world: Sequence[NDArray]) -> Tuple[NDArray, NDArray]:
        """
        Nearest voxel of this volume for each world coordinate.

        Parameters
        ----------
        world : sequence of NDArray
            One float array of world coordinates per axis, all of length n.

        Returns
        -------
        indices : int64[ndim, n]
            Voxel indices; entries for invalid coordinates are set to 0.
        valid : bool[n]
            True where the coordinate falls inside this volume.
        """
        n = len(world[0])
        indices = np.empty((self.ndim, n), dtype=np.int64)
        valid = np.ones(n, dtype=bool)
        for axis in range(self.ndim):
            local = (np.asarray(world[axis], dtype=np.float64) - self.origin[axis]) / self.voxel_size[axis]
            idx = np.floor(local + 0.5).astype(np.int64)
            valid &= (idx >= 0) & (idx < self.shape[axis])
            indices[axis] = idx
        indices[:, ~valid] = 0
        return indices, valid


@dataclass(frozen=True)
class FusionPlan:
    """
    Immutable description of one fusion run.

    Parameters
    ----------
    bounding_box : BoundingBox
        Region of the world frame to fuse.
    downsampling : float
        Output voxel size in world units (x and y; z also scaled by the
        anisotropy factor when anisotropy is preserved).
    pixel_type : PixelType or str
        Sample type of the fused volume.
    cache_strategy : CacheStrategy or str
        Backing strategy used for resource planning.
    content_based : bool
        Whether content-based weights are computed (adds processing memory).
    preserve_anisotropy : bool
        Keep the acquisition's coarser z sampling instead of isotropic output.
    anisotropy_factor : float
        Ratio of z to xy sampling used when `preserve_anisotropy` is set.
    blending_range : float
        Distance (voxels) over which view weights ramp from 0 to 1.
    fallback_threshold : float
        Total high-resolution weight below which the base view fills in.
    """

    bounding_box: BoundingBox
    downsampling: float = 1.0
    pixel_type: PixelType = PixelType.FLOAT32
    cache_strategy: CacheStrategy = CacheStrategy.VIRTUAL
    content_based: bool = False
    preserve_anisotropy: bool = False
    anisotropy_factor: float = 1.0
    blending_range: float = DEFAULT_BLENDING_RANGE
    fallback_threshold: float = DEFAULT_FALLBACK_THRESHOLD
    _extent: Tuple[Tuple[int, ...], Tuple[int, ...]] = field(
        init=False, repr=False, compare=False
    )

    def __post_init__(self):
        if not isinstance(self.bounding_box, BoundingBox):
            raise InvalidConfigurationError("bounding_box must be a BoundingBox.")
        object.__setattr__(self, "pixel_type", PixelType.parse(self.pixel_type))
        object.__setattr__(self, "cache_strategy", CacheStrategy.parse(self.cache_strategy))
        if not 0 < self.downsampling < math.inf:
            raise InvalidConfigurationError(
                f"downsampling must be finite and > 0, got {self.downsampling}"
            )
        if not 0 < self.anisotropy_factor < math.inf:
            raise InvalidConfigurationError(
                f"anisotropy_factor must be finite and > 0, got {self.anisotropy_factor}"
            )
        if not 0 < self.blending_range < math.inf:
            raise InvalidConfigurationError(
                f"blending_range must be finite and > 0, got {self.blending_range}"
            )
        if not self.fallback_threshold >= 0:
            raise InvalidConfigurationError(
                f"fallback_threshold must be >= 0, got {self.fallback_threshold}"
            )

        lo = list(self.bounding_box.min_corner)
        hi = list(self.bounding_box.max_corner)
        if self.preserve_anisotropy:
            lo[0] = int(math.floor(lo[0] / self.anisotropy_factor))
            hi[0] = int(math.ceil(hi[0] / self.anisotropy_factor))
        object.__setattr__(self, "_extent", (tuple(lo), tuple(hi)))

    @property
    def ndim(self) -> int:
        return self.bounding_box.ndim

    @property
    def effective_anisotropy(self) -> float:
        return self.anisotropy_factor if self.preserve_anisotropy else 1.0

    @property
    def dtype(self) -> np.dtype:
        return self.pixel_type.dtype

    @property
    def output_shape(self) -> Tuple[int, ...]:
        """Voxel dimensions of the fused volume."""
        lo, hi = self._extent
        return tuple(
            max(1, round_half_up((h - l + 1) / self.downsampling))
            for l, h in zip(lo, hi)
        )

    @property
    def output_origin(self) -> Tuple[float, ...]:
        lo, _ = self._extent
        origin = [float(v) for v in lo]
        origin[0] *= self.effective_anisotropy
        return tuple(origin)

    @property
    def output_voxel_size(self) -> Tuple[float, ...]:
        size = [float(self.downsampling)] * self.ndim
        size[0] *= self.effective_anisotropy
        return tuple(size)

    @property
    def num_output_pixels(self) -> int:
        return int(np.prod(self.output_shape, dtype=np.int64))

    def world_coordinates(self, positions: Sequence[NDArray]) -> Tuple[NDArray, ...]:
        """Map output voxel positions (one index array per axis) to world coordinates."""
        origin = self.output_origin
        size = self.output_voxel_size
        return tuple(
            origin[axis] + np.asarray(positions[axis], dtype=np.float64) * size[axis]
            for axis in range(self.ndim)
        )

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d.pop("_extent")
        d["bounding_box"] = {
            "min": list(self.bounding_box.min_corner),
            "max": list(self.bounding_box.max_corner),
        }
        d["pixel_type"] = self.pixel_type.value
        d["cache_strategy"] = self.cache_strategy.value
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "FusionPlan":
        """
        Build a plan from the dictionary written by `to_dict` (e.g. a JSON plan file).

        Raises
        ------
        InvalidConfigurationError
            For unknown keys, a missing or malformed bounding box, or values
            of the wrong type.
        """
        if not isinstance(d, dict):
            raise InvalidConfigurationError(
                f"Fusion plan must be a mapping, got {type(d).__name__}."
            )
        d = dict(d)
        allowed = {f.name for f in fields(cls) if f.init}
        unknown = sorted(set(d) - allowed)
        if unknown:
            raise InvalidConfigurationError(
                f"Unknown fusion plan keys: {', '.join(unknown)}. "
                f"Expected: {', '.join(sorted(allowed))}."
            )
        try:
            bb = d.pop("bounding_box")
        except KeyError:
            raise InvalidConfigurationError("Fusion plan is missing 'bounding_box'.") from None

        try:
            if isinstance(bb, BoundingBox):
                box = bb
            elif isinstance(bb, str):
                box = BoundingBox.parse(bb)
            else:
                box = BoundingBox(tuple(bb["min"]), tuple(bb["max"]))
            return cls(bounding_box=box, **d)
        except InvalidConfigurationError:
            raise
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidConfigurationError(f"Invalid fusion plan: {e!r}") from e
