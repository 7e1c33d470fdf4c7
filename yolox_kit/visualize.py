from __future__ import annotations

from typing import Iterable, Tuple

import numpy as np

from .types import RGB, BBox2DInfo


def rgb_to_bgr255(color: RGB) -> Tuple[int, int, int]:
    """
    Colormap RGB in [0, 1] -> OpenCV BGR in [0, 255].
    """

    r, g, b = (int(round(float(np.clip(c, 0.0, 1.0)) * 255)) for c in color)
    return b, g, r


def draw_detections(
    image_bgr: np.ndarray,
    detections: Iterable[BBox2DInfo],
    *,
    scale: Tuple[float, float] = (1.0, 1.0),
    show_score: bool = True,
    box_thickness: int = 2,
    font_scale: float = 0.5,
    font_thickness: int = 1,
) -> np.ndarray:
    """
    Draw labeled boxes on an OpenCV BGR image and return a copy.

    Args:
        image_bgr: input image in BGR (H, W, 3).
        detections: boxes in model-input pixel space.
        scale: (sx, sy) from model-input pixels to `image_bgr` pixels.
    """

    try:
        import cv2  # type: ignore
    except Exception as e:  # pragma: no cover
        raise ImportError("OpenCV is required for draw_detections(). Install with `pip install opencv-python`.") from e

    if image_bgr is None or not hasattr(image_bgr, "shape"):
        raise TypeError("image_bgr must be a NumPy array (BGR).")
    if image_bgr.ndim != 3 or image_bgr.shape[2] != 3:
        raise ValueError(f"Expected image shape (H, W, 3), got {getattr(image_bgr, 'shape', None)}")

    out = image_bgr.copy()
    h, w = out.shape[:2]
    sx, sy = scale

    for det in detections:
        x1, y1, x2, y2 = det.as_xyxy()
        x1i = int(np.clip(round(x1 * sx), 0, w - 1))
        y1i = int(np.clip(round(y1 * sy), 0, h - 1))
        x2i = int(np.clip(round(x2 * sx), 0, w - 1))
        y2i = int(np.clip(round(y2 * sy), 0, h - 1))

        color = rgb_to_bgr255(det.color)
        cv2.rectangle(out, (x1i, y1i), (x2i, y2i), color, thickness=box_thickness)

        label = f"{det.label} {det.bbox.score:.2f}" if show_score else det.label
        (tw, th), baseline = cv2.getTextSize(label, cv2.FONT_HERSHEY_SIMPLEX, font_scale, font_thickness)
        # Above the box if it fits, else inside.
        y_text_top = y1i - th - baseline
        if y_text_top < 0:
            y_text_top = y1i

        cv2.rectangle(
            out,
            (x1i, y_text_top),
            (min(x1i + tw, w - 1), min(y_text_top + th + baseline, h - 1)),
            color,
            thickness=-1,
        )
        cv2.putText(
            out,
            label,
            (x1i, min(y_text_top + th, h - 1)),
            cv2.FONT_HERSHEY_SIMPLEX,
            font_scale,
            (255, 255, 255),
            thickness=font_thickness,
            lineType=cv2.LINE_AA,
        )

    return out
