from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .errors import ConfigurationInvalid
from .types import BBox2D


@dataclass
class NMSConfig:
    iou_threshold: float = 0.45
    # None keeps every surviving box.
    max_detections: Optional[int] = None
    # If False, boxes only suppress boxes of their own class.
    class_agnostic: bool = True


def boxes_to_arrays(boxes: Sequence[BBox2D]) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Split BBox2D objects into (N, 4) xyxy, (N,) scores and (N,) class ids.
    """

    if len(boxes) == 0:
        return np.empty((0, 4), dtype=np.float64), np.empty((0,), dtype=np.float64), np.empty((0,), dtype=np.int64)
    xyxy = np.array([b.as_xyxy() for b in boxes], dtype=np.float64)
    scores = np.array([b.score for b in boxes], dtype=np.float64)
    class_ids = np.array([b.class_index for b in boxes], dtype=np.int64)
    return xyxy, scores, class_ids


def _areas(xyxy: np.ndarray) -> np.ndarray:
    w = np.maximum(0.0, xyxy[:, 2] - xyxy[:, 0])
    h = np.maximum(0.0, xyxy[:, 3] - xyxy[:, 1])
    return w * h


def _iou_one_to_many(box: np.ndarray, area: float, others: np.ndarray, other_areas: np.ndarray) -> np.ndarray:
    xx1 = np.maximum(box[0], others[:, 0])
    yy1 = np.maximum(box[1], others[:, 1])
    xx2 = np.minimum(box[2], others[:, 2])
    yy2 = np.minimum(box[3], others[:, 3])

    inter = np.maximum(0.0, xx2 - xx1) * np.maximum(0.0, yy2 - yy1)
    union = area + other_areas - inter
    # Zero-area pairs have no overlap by definition.
    return np.divide(inter, union, out=np.zeros_like(inter), where=union > 0)


def box_iou(a: BBox2D, b: BBox2D) -> float:
    """
    Intersection-over-union of two center-format boxes (0.0 if either has no area).
    """

    xyxy = np.array([a.as_xyxy(), b.as_xyxy()], dtype=np.float64)
    areas = _areas(xyxy)
    return float(_iou_one_to_many(xyxy[0], areas[0], xyxy[1:], areas[1:])[0])


def nms_arrays(
    boxes_xyxy: np.ndarray,
    scores: np.ndarray,
    cfg: NMSConfig,
    class_ids: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Greedy NumPy NMS. Expects boxes shape (N,4) in xyxy and scores shape (N,).
    Returns indices of boxes to keep, highest score first.

    Ties in score keep the lower index first, so the result is deterministic.
    """

    if not 0.0 <= cfg.iou_threshold <= 1.0:
        raise ConfigurationInvalid(f"iou_threshold must be in [0, 1], got {cfg.iou_threshold}")
    if cfg.max_detections is not None and cfg.max_detections < 1:
        raise ConfigurationInvalid(f"max_detections must be >= 1 or None, got {cfg.max_detections}")

    boxes_xyxy = np.asarray(boxes_xyxy, dtype=np.float64).reshape(-1, 4)
    scores = np.asarray(scores, dtype=np.float64).reshape(-1)
    if boxes_xyxy.shape[0] != scores.shape[0]:
        raise ValueError(f"Got {boxes_xyxy.shape[0]} boxes but {scores.shape[0]} scores.")
    if boxes_xyxy.shape[0] == 0:
        return np.empty((0,), dtype=np.int64)
    if not cfg.class_agnostic and class_ids is None:
        raise ValueError("class_ids are required for per-class NMS.")

    areas = _areas(boxes_xyxy)
    order = np.argsort(-scores, kind="stable")
    keep: List[int] = []

    while order.size > 0:
        if cfg.max_detections is not None and len(keep) >= cfg.max_detections:
            break
        i = order[0]
        keep.append(int(i))

        rest = order[1:]
        if rest.size == 0:
            break
        iou = _iou_one_to_many(boxes_xyxy[i], areas[i], boxes_xyxy[rest], areas[rest])
        suppressed = iou > cfg.iou_threshold
        if not cfg.class_agnostic:
            suppressed &= class_ids[rest] == class_ids[i]
        order = rest[~suppressed]

    return np.array(keep, dtype=np.int64)


def nms(boxes: Sequence[BBox2D], cfg: NMSConfig = NMSConfig()) -> List[int]:
    """
    Non-maximum suppression over decoded proposals.

    Returns indices into `boxes` of the boxes to keep, in descending-score order.
    """

    xyxy, scores, class_ids = boxes_to_arrays(boxes)
    return nms_arrays(xyxy, scores, cfg, class_ids=class_ids).tolist()


def suppress(boxes: Sequence[BBox2D], iou_threshold: float = 0.45) -> List[int]:
    """Class-agnostic NMS with default settings."""
    return nms(boxes, NMSConfig(iou_threshold=iou_threshold))
