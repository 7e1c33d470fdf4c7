from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from .errors import ConfigurationInvalid
from .postprocess import YoloxPostConfig
from .readback import PixelFormat


@dataclass(frozen=True)
class YoloxConfig:
    confidence_threshold: float = 0.5
    iou_threshold: float = 0.45
    strides: Tuple[int, ...] = (8, 16, 32)
    class_agnostic_nms: bool = True
    max_detections: Optional[int] = None
    # Capability flag supplied by the host environment.
    supports_async_transfer: bool = False
    pixel_format: PixelFormat = PixelFormat.R32F

    def __post_init__(self) -> None:
        if not 0.0 < self.confidence_threshold <= 1.0:
            raise ConfigurationInvalid("confidence_threshold must be in (0, 1]")
        if not 0.0 <= self.iou_threshold <= 1.0:
            raise ConfigurationInvalid("iou_threshold must be in [0, 1]")
        if not self.strides:
            raise ConfigurationInvalid("strides must not be empty")
        if any(isinstance(s, bool) or not isinstance(s, int) or s <= 0 for s in self.strides):
            raise ConfigurationInvalid("strides must be positive integers")
        if list(self.strides) != sorted(set(self.strides)):
            raise ConfigurationInvalid("strides must be strictly ascending")
        if self.max_detections is not None and self.max_detections < 1:
            raise ConfigurationInvalid("max_detections must be >= 1")

    @property
    def max_stride(self) -> int:
        return max(self.strides)

    def post_config(self) -> YoloxPostConfig:
        return YoloxPostConfig(
            confidence_threshold=self.confidence_threshold,
            iou_threshold=self.iou_threshold,
            max_detections=self.max_detections,
            class_agnostic_nms=self.class_agnostic_nms,
        )


def _require_number(payload: Dict[str, Any], key: str) -> float:
    value = payload[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationInvalid(f"{key} must be a number")
    return float(value)


def _require_bool(payload: Dict[str, Any], key: str) -> bool:
    value = payload[key]
    if not isinstance(value, bool):
        raise ConfigurationInvalid(f"{key} must be true or false")
    return value


def load_config(path: Union[str, Path]) -> YoloxConfig:
    """
    Read a `YoloxConfig` from a JSON object. Missing keys keep their defaults;
    unknown keys are rejected.
    """

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    raw = path.read_text(encoding="utf-8")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigurationInvalid(f"Invalid config JSON: {path}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationInvalid("Config must be a JSON object")

    allowed = {
        "confidence_threshold",
        "iou_threshold",
        "strides",
        "class_agnostic_nms",
        "max_detections",
        "supports_async_transfer",
        "pixel_format",
    }
    unknown = sorted(set(payload.keys()) - allowed)
    if unknown:
        raise ConfigurationInvalid(f"Unknown config keys: {unknown}")

    kwargs: Dict[str, Any] = {}
    for key in ("confidence_threshold", "iou_threshold"):
        if key in payload:
            kwargs[key] = _require_number(payload, key)
    for key in ("class_agnostic_nms", "supports_async_transfer"):
        if key in payload:
            kwargs[key] = _require_bool(payload, key)

    if "strides" in payload:
        strides = payload["strides"]
        if not isinstance(strides, list) or any(isinstance(s, bool) or not isinstance(s, int) for s in strides):
            raise ConfigurationInvalid("strides must be a list of integers")
        kwargs["strides"] = tuple(strides)

    if payload.get("max_detections") is not None:
        max_det = payload["max_detections"]
        if isinstance(max_det, bool) or not isinstance(max_det, int):
            raise ConfigurationInvalid("max_detections must be an integer or null")
        kwargs["max_detections"] = max_det

    if "pixel_format" in payload:
        try:
            kwargs["pixel_format"] = PixelFormat(payload["pixel_format"])
        except ValueError as exc:
            choices = [f.value for f in PixelFormat]
            raise ConfigurationInvalid(f"pixel_format must be one of {choices}") from exc

    return YoloxConfig(**kwargs)
