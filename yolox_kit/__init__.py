"""
YOLOX post-processing helpers.

Grid/stride tables, proposal decoding, NMS and reconstruction of outputs that
come back through an asynchronous texture readback. Framework-agnostic: works
on flat NumPy arrays from ONNX Runtime, TorchScript or any other producer.
"""

from .types import NUM_BBOX_FIELDS, BBox2D, BBox2DInfo, ColorMapEntry, GridCoordinateAndStride
from .errors import (
    ConfigurationInvalid,
    ReadbackFailed,
    ShapeMismatch,
    UnsupportedTransferPath,
    YoloxKitError,
)
from .grid import GridStrideCache, GridStrideTable, crop_to_stride_multiple, generate_grid_strides
from .nms import NMSConfig, box_iou, nms, suppress
from .postprocess import YoloxPostConfig, YoloxPostprocessor, decode_proposals
from .readback import (
    PixelFormat,
    ReadbackChannel,
    ReadbackRequest,
    ReadbackResponse,
    ReadbackTransfer,
    ThreadedReadbackTransfer,
    reconstruct,
    to_texture_encoding,
)
from .colormap import load_colormap, parse_colormap
from .config import YoloxConfig, load_config
from .runtime import YoloxPipeline, load_pipeline, resolve_path
from .visualize import draw_detections

__all__ = [
    "NUM_BBOX_FIELDS",
    "BBox2D",
    "BBox2DInfo",
    "ColorMapEntry",
    "GridCoordinateAndStride",
    "YoloxKitError",
    "ShapeMismatch",
    "ConfigurationInvalid",
    "ReadbackFailed",
    "UnsupportedTransferPath",
    "GridStrideTable",
    "GridStrideCache",
    "generate_grid_strides",
    "crop_to_stride_multiple",
    "NMSConfig",
    "box_iou",
    "nms",
    "suppress",
    "YoloxPostConfig",
    "YoloxPostprocessor",
    "decode_proposals",
    "PixelFormat",
    "ReadbackRequest",
    "ReadbackResponse",
    "ReadbackTransfer",
    "ThreadedReadbackTransfer",
    "ReadbackChannel",
    "reconstruct",
    "to_texture_encoding",
    "load_colormap",
    "parse_colormap",
    "YoloxConfig",
    "load_config",
    "YoloxPipeline",
    "load_pipeline",
    "resolve_path",
    "draw_detections",
]
