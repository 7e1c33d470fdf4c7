from dataclasses import dataclass
from typing import Tuple

# [offset_x, offset_y, log_w, log_h, objectness]
NUM_BBOX_FIELDS = 5

RGB = Tuple[float, float, float]


@dataclass(frozen=True)
class GridCoordinateAndStride:
    """
    Geometric reference of one output cell: its column/row in the feature map
    and the downsampling factor of that map.
    """

    grid_x: int
    grid_y: int
    stride: int


@dataclass(frozen=True)
class BBox2D:
    """
    Candidate box in input-pixel space, as produced by the proposal decoder.
    """

    center_x: float
    center_y: float
    width: float
    height: float
    class_index: int
    score: float

    def as_xyxy(self) -> Tuple[float, float, float, float]:
        half_w = self.width / 2
        half_h = self.height / 2
        return (
            self.center_x - half_w,
            self.center_y - half_h,
            self.center_x + half_w,
            self.center_y + half_h,
        )

    @property
    def area(self) -> float:
        return max(self.width, 0.0) * max(self.height, 0.0)


@dataclass(frozen=True)
class ColorMapEntry:
    label: str
    color: RGB


@dataclass(frozen=True)
class BBox2DInfo:
    """
    Final detection: a kept box paired with its class label and color.
    """

    bbox: BBox2D
    label: str
    color: RGB

    def as_xyxy(self) -> Tuple[float, float, float, float]:
        return self.bbox.as_xyxy()
