from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from .errors import ConfigurationInvalid, ShapeMismatch
from .grid import GridStrideTable
from .nms import NMSConfig, boxes_to_arrays, nms_arrays
from .types import NUM_BBOX_FIELDS, BBox2D, BBox2DInfo, ColorMapEntry, GridCoordinateAndStride

GridLike = Union[GridStrideTable, Sequence[GridCoordinateAndStride]]


def _as_grid_table(grid_table: GridLike) -> GridStrideTable:
    if isinstance(grid_table, GridStrideTable):
        return grid_table
    return GridStrideTable.from_records(grid_table)


def _check_threshold(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ConfigurationInvalid(f"{name} must be in [0, 1], got {value}")


def decode_arrays(
    raw: np.ndarray,
    grid_table: GridLike,
    class_count: int,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Decode every cell of a flat YOLOX output vector.

    Returns:
        boxes_cxcywh: (N, 4) float32 in input-pixel space
        scores: (N,) objectness * best class score
        class_ids: (N,) argmax over class scores (first index on ties)
    """

    if class_count < 1:
        raise ConfigurationInvalid(f"class_count must be >= 1, got {class_count}")

    table = _as_grid_table(grid_table)
    proposal_length = NUM_BBOX_FIELDS + class_count
    flat = np.asarray(raw, dtype=np.float32).reshape(-1)
    expected = len(table) * proposal_length
    if flat.size != expected:
        raise ShapeMismatch(
            f"Raw output has {flat.size} values, expected {expected} "
            f"({len(table)} cells x {proposal_length} fields)."
        )

    props = flat.reshape(len(table), proposal_length)
    gx = table.grid_x.astype(np.float32)
    gy = table.grid_y.astype(np.float32)
    stride = table.strides.astype(np.float32)

    cx = (props[:, 0] + gx) * stride
    cy = (props[:, 1] + gy) * stride
    w = np.exp(props[:, 2]) * stride
    h = np.exp(props[:, 3]) * stride
    boxes = np.stack([cx, cy, w, h], axis=1)

    objectness = props[:, 4]
    class_scores = props[:, NUM_BBOX_FIELDS:]
    class_ids = np.argmax(class_scores, axis=1)
    class_conf = class_scores[np.arange(class_scores.shape[0]), class_ids]
    scores = objectness * class_conf

    return boxes, scores, class_ids


def decode_proposals(
    raw: np.ndarray,
    grid_table: GridLike,
    class_count: int,
    confidence_threshold: float = 0.5,
) -> List[BBox2D]:
    """
    Turn a flat YOLOX output vector into candidate boxes scoring at least
    `confidence_threshold`. Boxes keep grid-table order; sorting is left to NMS.

    Objectness and class scores are expected to be already activated by the
    exported model.

    Raises:
        ShapeMismatch: `len(raw) != len(grid_table) * (5 + class_count)`
        ConfigurationInvalid: `class_count < 1` or threshold outside [0, 1]
    """

    _check_threshold("confidence_threshold", confidence_threshold)
    boxes, scores, class_ids = decode_arrays(raw, grid_table, class_count)

    keep = np.nonzero(scores >= confidence_threshold)[0]
    return [
        BBox2D(
            center_x=float(boxes[i, 0]),
            center_y=float(boxes[i, 1]),
            width=float(boxes[i, 2]),
            height=float(boxes[i, 3]),
            class_index=int(class_ids[i]),
            score=float(scores[i]),
        )
        for i in keep
    ]


@dataclass
class YoloxPostConfig:
    """
    Settings for YOLOX post-processing.
    """

    confidence_threshold: float = 0.5
    iou_threshold: float = 0.45
    # None keeps every box that survives NMS.
    max_detections: Optional[int] = None
    # If False, skip NMS and only sort by score (then apply max_detections).
    apply_nms: bool = True
    # If True, NMS is class-agnostic (YOLOX default).
    class_agnostic_nms: bool = True


class YoloxPostprocessor:
    """
    Decode -> confidence filter -> NMS -> label/color join for one YOLOX output.

    The raw output is the flat vector `[cell_0 fields, cell_1 fields, ...]` with
    `5 + len(colormap)` fields per cell, in the cell order of `grid_table`.
    """

    def __init__(self, cfg: YoloxPostConfig, colormap: Sequence[ColorMapEntry]):
        if not colormap:
            raise ConfigurationInvalid("Colormap must contain at least one class.")
        _check_threshold("confidence_threshold", cfg.confidence_threshold)
        _check_threshold("iou_threshold", cfg.iou_threshold)
        self.cfg = cfg
        self.colormap = list(colormap)

    @property
    def class_count(self) -> int:
        return len(self.colormap)

    @property
    def proposal_length(self) -> int:
        return NUM_BBOX_FIELDS + self.class_count

    def decode(self, raw: np.ndarray, grid_table: GridLike) -> List[BBox2D]:
        return decode_proposals(raw, grid_table, self.class_count, self.cfg.confidence_threshold)

    def select(self, proposals: Sequence[BBox2D]) -> List[int]:
        """
        Indices of proposals to keep, highest score first.
        """

        if not proposals:
            return []

        xyxy, scores, class_ids = boxes_to_arrays(proposals)

        if self.cfg.apply_nms:
            nms_cfg = NMSConfig(
                iou_threshold=self.cfg.iou_threshold,
                max_detections=self.cfg.max_detections,
                class_agnostic=self.cfg.class_agnostic_nms,
            )
            return nms_arrays(xyxy, scores, nms_cfg, class_ids=class_ids).tolist()

        order = np.argsort(-scores, kind="stable")
        if self.cfg.max_detections is not None:
            order = order[: self.cfg.max_detections]
        return order.tolist()

    def process(self, raw: np.ndarray, grid_table: GridLike) -> List[BBox2DInfo]:
        """
        Convert one raw output vector into labeled detections in input-pixel space.
        """

        proposals = self.decode(raw, grid_table)
        kept = self.select(proposals)

        out: List[BBox2DInfo] = []
        for idx in kept:
            bbox = proposals[idx]
            entry = self.colormap[bbox.class_index]
            out.append(BBox2DInfo(bbox=bbox, label=entry.label, color=entry.color))
        return out
