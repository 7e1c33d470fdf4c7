from __future__ import annotations

import logging
import threading
from typing import Iterator, Sequence, Tuple, Union, overload

import numpy as np

from .errors import ConfigurationInvalid
from .types import GridCoordinateAndStride

LOGGER = logging.getLogger(__name__)

DEFAULT_STRIDES: Tuple[int, ...] = (8, 16, 32)


class GridStrideTable:
    """
    Immutable, ordered table of (grid_x, grid_y, stride) records, one per output cell.

    Backed by an (N, 3) int32 array so decoding can stay vectorized, but it still
    behaves like a sequence of `GridCoordinateAndStride`.
    """

    __slots__ = ("_cells",)

    def __init__(self, cells: np.ndarray):
        cells = np.array(cells, dtype=np.int32).reshape(-1, 3)
        cells.setflags(write=False)
        self._cells = cells

    @classmethod
    def from_records(cls, records: Sequence[GridCoordinateAndStride]) -> "GridStrideTable":
        if not records:
            return cls(np.empty((0, 3), dtype=np.int32))
        return cls(np.array([(r.grid_x, r.grid_y, r.stride) for r in records], dtype=np.int32))

    @property
    def grid_x(self) -> np.ndarray:
        return self._cells[:, 0]

    @property
    def grid_y(self) -> np.ndarray:
        return self._cells[:, 1]

    @property
    def strides(self) -> np.ndarray:
        return self._cells[:, 2]

    def as_array(self) -> np.ndarray:
        return self._cells

    def __len__(self) -> int:
        return int(self._cells.shape[0])

    @overload
    def __getitem__(self, index: int) -> GridCoordinateAndStride: ...

    @overload
    def __getitem__(self, index: slice) -> "GridStrideTable": ...

    def __getitem__(self, index: Union[int, slice]):
        if isinstance(index, slice):
            return GridStrideTable(self._cells[index])
        gx, gy, s = self._cells[index]
        return GridCoordinateAndStride(grid_x=int(gx), grid_y=int(gy), stride=int(s))

    def __iter__(self) -> Iterator[GridCoordinateAndStride]:
        for gx, gy, s in self._cells.tolist():
            yield GridCoordinateAndStride(grid_x=gx, grid_y=gy, stride=s)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GridStrideTable):
            return NotImplemented
        return np.array_equal(self._cells, other._cells)

    def __repr__(self) -> str:
        levels = sorted(set(self.strides.tolist()))
        return f"GridStrideTable(cells={len(self)}, strides={levels})"


def _validate_strides(strides: Sequence[int]) -> Tuple[int, ...]:
    if len(strides) == 0:
        raise ConfigurationInvalid("strides must not be empty")
    out = []
    for s in strides:
        if isinstance(s, bool) or int(s) != s or int(s) <= 0:
            raise ConfigurationInvalid(f"strides must be positive integers, got {list(strides)}")
        out.append(int(s))
    return tuple(out)


def generate_grid_strides(strides: Sequence[int], input_height: int, input_width: int) -> GridStrideTable:
    """
    Build the per-cell lookup table in the order the network flattens its output.

    Stride levels are concatenated in the order given (finest first for the usual
    ascending strides); inside a level cells are row-major with the column varying
    fastest.

    Raises:
        ConfigurationInvalid: non-positive strides/dims, or dims not divisible by a stride.
            Use `crop_to_stride_multiple` beforehand.
    """

    levels = _validate_strides(strides)
    if input_height <= 0 or input_width <= 0:
        raise ConfigurationInvalid(f"Input dims must be positive, got {input_width}x{input_height}")

    chunks = []
    for s in levels:
        if input_height % s or input_width % s:
            raise ConfigurationInvalid(
                f"Input dims {input_width}x{input_height} are not divisible by stride {s}; "
                "crop them to a multiple of the largest stride first."
            )
        cols = input_width // s
        rows = input_height // s
        # meshgrid returns (rows, cols) arrays, so ravel() keeps the column fastest.
        gx, gy = np.meshgrid(np.arange(cols, dtype=np.int32), np.arange(rows, dtype=np.int32))
        stride_col = np.full(rows * cols, s, dtype=np.int32)
        chunks.append(np.stack([gx.ravel(), gy.ravel(), stride_col], axis=1))

    return GridStrideTable(np.concatenate(chunks, axis=0))


def expected_cell_count(strides: Sequence[int], input_height: int, input_width: int) -> int:
    return sum((input_width // s) * (input_height // s) for s in _validate_strides(strides))


def crop_to_stride_multiple(dims: Tuple[int, int], max_stride: int) -> Tuple[int, int]:
    """
    Trim (width, height) down to the nearest multiple of `max_stride`.
    """

    if max_stride <= 0:
        raise ConfigurationInvalid(f"max_stride must be > 0, got {max_stride}")
    width, height = dims
    return width - width % max_stride, height - height % max_stride


class GridStrideCache:
    """
    Single-owner cache of the current `GridStrideTable`.

    A new table is always built off to the side and then swapped in, so a reader
    holding `table` never sees a partially rebuilt one.
    """

    def __init__(self, strides: Sequence[int] = DEFAULT_STRIDES):
        self.strides = _validate_strides(strides)
        self._lock = threading.Lock()
        self._table = GridStrideTable(np.empty((0, 3), dtype=np.int32))
        self._dims: Tuple[int, int] = (0, 0)

    @property
    def table(self) -> GridStrideTable:
        return self._table

    @property
    def dims(self) -> Tuple[int, int]:
        """(height, width) the current table was generated for."""
        return self._dims

    def ensure(self, output_length: int, proposal_length: int, input_height: int, input_width: int) -> GridStrideTable:
        """
        Return a table matching `output_length`, rebuilding it when the implied cell
        count differs from the cached one (e.g. after an input-resolution change).
        """

        if proposal_length <= 0:
            raise ConfigurationInvalid(f"proposal_length must be > 0, got {proposal_length}")

        current = self._table
        if output_length // proposal_length == len(current):
            return current

        fresh = generate_grid_strides(self.strides, input_height, input_width)
        with self._lock:
            self._table = fresh
            self._dims = (input_height, input_width)
        LOGGER.debug("Rebuilt grid table for %dx%d: %d cells", input_width, input_height, len(fresh))
        return fresh
