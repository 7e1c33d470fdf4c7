from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Tuple, Union

import numpy as np


PathLike = Union[str, Path]

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class OnnxRuntimeBackendConfig:
    """
    Configuration for ONNX Runtime inference.

    - providers: ORT execution providers in priority order
    - input_name/output_name: override the first input/output of the graph
    """

    providers: Optional[Sequence[str]] = None
    input_name: Optional[str] = None
    output_name: Optional[str] = None


class OnnxRuntimeBackend:
    """
    ONNX Runtime runner for YOLOX exports.

    YOLOX graphs emit (1, cells, 5 + classes); `infer` returns that tensor
    flattened to float32, which is exactly the layout the decoder consumes.
    """

    def __init__(self, model_path: PathLike, cfg: OnnxRuntimeBackendConfig = OnnxRuntimeBackendConfig()):
        try:
            import onnxruntime as ort  # type: ignore
        except Exception as e:  # pragma: no cover
            raise ImportError(
                "onnxruntime is required for the ONNX backend. Install it with `pip install onnxruntime` "
                "(or `onnxruntime-gpu`)."
            ) from e

        self.model_path = Path(model_path)
        if not self.model_path.exists():
            raise FileNotFoundError(str(self.model_path))

        providers = list(cfg.providers) if cfg.providers is not None else None
        self.session = ort.InferenceSession(str(self.model_path), sess_options=ort.SessionOptions(), providers=providers)

        model_input = self.session.get_inputs()[0]
        self.input_name = cfg.input_name or model_input.name
        self.output_name = cfg.output_name or self.session.get_outputs()[0].name
        self._input_shape = tuple(model_input.shape)
        LOGGER.debug("ORT session on %s, input %s%s", self.providers_in_use, self.input_name, self._input_shape)

    @property
    def providers_in_use(self) -> Sequence[str]:
        return tuple(self.session.get_providers())

    @property
    def input_hw(self) -> Optional[Tuple[int, int]]:
        """(H, W) baked into the graph, or None for dynamic axes."""
        if len(self._input_shape) != 4:
            return None
        h, w = self._input_shape[2], self._input_shape[3]
        if isinstance(h, int) and isinstance(w, int):
            return h, w
        return None

    def infer(self, blob: np.ndarray) -> np.ndarray:
        outputs = self.session.run([self.output_name], {self.input_name: blob.astype(np.float32, copy=False)})
        return np.asarray(outputs[0], dtype=np.float32).reshape(-1)
