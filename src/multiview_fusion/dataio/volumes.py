"""
Read and write single volumes as TIFF or zarr stores.

Volumes carry their world origin and voxel size as metadata: in the TIFF
description for TIFF files, and in the group attributes for zarr v3 stores.
"""

import json
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Union

import numpy as np
import tensorstore as ts
from tifffile import TiffFile, TiffWriter

from multiview_fusion.plan import Volume

TIFF_SUFFIXES = (".tif", ".tiff")


def _is_tiff(path: Path) -> bool:
    return path.suffix.lower() in TIFF_SUFFIXES


def _zarr_driver(path: Path) -> str:
    if (path / "zarr.json").exists():
        return "zarr3"
    if (path / ".zarray").exists():
        return "zarr"
    raise FileNotFoundError(f"No zarr array metadata found in {path}")


def _squeeze_leading(data: np.ndarray, ndim: int = 3) -> np.ndarray:
    """Drop leading singleton axes (e.g. t and c of a TCZYX store)."""
    while data.ndim > ndim and data.shape[0] == 1:
        data = data[0]
    return data


def _spatial_metadata(attrs: Dict[str, Any], ndim: int) -> Dict[str, Optional[tuple]]:
    origin = attrs.get("origin")
    voxel_size = attrs.get("voxel_size")
    return {
        "origin": tuple(origin[-ndim:]) if origin is not None else None,
        "voxel_size": tuple(voxel_size[-ndim:]) if voxel_size is not None else None,
    }


def read_volume(
    path: Union[str, Path],
    origin: Optional[Sequence[float]] = None,
    voxel_size: Optional[Sequence[float]] = None,
) -> Volume:
    """
    Load a volume from a TIFF file or a zarr store.

    Parameters
    ----------
    path : str or Path
        `.tif`/`.tiff` file or zarr (v2 or v3) array directory.
    origin : sequence of float, optional
        World origin; overrides stored metadata.
    voxel_size : sequence of float, optional
        Voxel size; overrides stored metadata.

    Returns
    -------
    volume : Volume
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Volume not found: {path}")

    if _is_tiff(path):
        with TiffFile(path) as tif:
            data = tif.asarray()
            shaped = tif.shaped_metadata
        attrs = dict(shaped[0]) if shaped else {}
    else:
        driver = _zarr_driver(path)
        store = ts.open({
            "driver": driver,
            "kvstore": {"driver": "file", "path": str(path)},
        }).result()
        data = store.read().result()
        attrs = {}
        if driver == "zarr3":
            with open(path / "zarr.json", "r") as f:
                attrs = json.load(f).get("attributes", {})

    data = _squeeze_leading(np.asarray(data))
    meta = _spatial_metadata(attrs, data.ndim)
    return Volume(
        data,
        origin=origin if origin is not None else meta["origin"],
        voxel_size=voxel_size if voxel_size is not None else meta["voxel_size"],
    )


def _write_tiff(path: Path, volume: Volume) -> None:
    axes = "ZYX"[-volume.ndim:] if volume.ndim <= 3 else None
    metadata = {
        "origin": list(volume.origin),
        "voxel_size": list(volume.voxel_size),
    }
    if axes is not None:
        metadata["axes"] = axes
    with TiffWriter(path, bigtiff=True) as tif:
        tif.write(
            volume.data,
            photometric="minisblack",
            metadata=metadata,
        )


def _write_zarr3(path: Path, volume: Volume, max_workers: int = 8) -> None:
    shape = list(volume.shape)
    chunk = [min(s, 256) for s in shape]
    if len(chunk) >= 3:
        chunk[-3] = min(shape[-3], 16)

    config = {
        "context": {
            "file_io_concurrency": {"limit": max_workers},
            "data_copy_concurrency": {"limit": max_workers},
        },
        "driver": "zarr3",
        "kvstore": {"driver": "file", "path": str(path)},
        "metadata": {
            "shape": shape,
            "chunk_grid": {
                "name": "regular",
                "configuration": {"chunk_shape": chunk}
            },
            "chunk_key_encoding": {"name": "default"},
            "codecs": [
                {"name": "bytes", "configuration": {"endian": "little"}},
                {"name": "blosc",
                 "configuration": {
                     "cname": "zstd",
                     "clevel": 5,
                     "shuffle": "bitshuffle"
                 }}
            ],
            "data_type": volume.data.dtype.name,
            "dimension_names": ["z", "y", "x"][-len(shape):] if len(shape) <= 3 else None,
        },
    }
    if config["metadata"]["dimension_names"] is None:
        del config["metadata"]["dimension_names"]

    store = ts.open(config, create=True, delete_existing=True).result()
    store.write(np.ascontiguousarray(volume.data)).result()
    update_placement_metadata(store, volume)


def update_placement_metadata(ts_store, volume: Volume) -> None:
    """Store origin and voxel size in the attributes of a zarr v3 array.

    Parameters
    ----------
    ts_store : tensorstore.TensorStore
        Open zarr3 store to update.
    volume : Volume
        Volume whose placement is recorded.
    """
    read_result = ts_store.kvstore.read("zarr.json").result()
    if read_result.state == "missing":
        existing_metadata = {}
    else:
        existing_metadata = json.loads(read_result.value.decode("utf-8"))

    existing_metadata.setdefault("attributes", {}).update({
        "origin": list(volume.origin),
        "voxel_size": list(volume.voxel_size),
    })
    ts_store.kvstore.write("zarr.json", json.dumps(existing_metadata).encode("utf-8")).result()


def write_volume(path: Union[str, Path], volume: Volume, max_workers: int = 8) -> Path:
    """
    Write a volume as TIFF (by suffix) or as a zarr v3 store.

    Parameters
    ----------
    path : str or Path
        Output file or store directory.
    volume : Volume
        Volume to write.
    max_workers : int
        I/O concurrency for zarr writes.

    Returns
    -------
    path : Path
    """
    path = Path(path)
    if _is_tiff(path):
        _write_tiff(path, volume)
    else:
        _write_zarr3(path, volume, max_workers=max_workers)
    return path
