from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np

from .colormap import load_colormap
from .config import YoloxConfig
from .errors import UnsupportedTransferPath
from .grid import GridStrideCache, GridStrideTable, crop_to_stride_multiple
from .postprocess import YoloxPostprocessor
from .readback import ReadbackChannel, ReadbackTransfer
from .types import BBox2DInfo, ColorMapEntry

LOGGER = logging.getLogger(__name__)

PathLike = Union[str, Path]


def find_project_root(
    start: Optional[PathLike] = None,
    markers: Sequence[str] = ("pyproject.toml", ".git"),
) -> Path:
    """
    Walk up from `start` (default: cwd) to the first directory holding one of `markers`.
    """

    p = Path(start).resolve() if start is not None else Path.cwd().resolve()
    if p.is_file():
        p = p.parent
    for parent in (p, *p.parents):
        if any((parent / m).exists() for m in markers):
            return parent
    return p


def resolve_path(path: PathLike, root: Optional[PathLike] = "auto") -> Path:
    """
    Absolute paths are returned as-is; relative ones resolve against `root`
    (or the project root when `root` is "auto"/None).
    """

    p = Path(path)
    if p.is_absolute():
        return p
    base = find_project_root() if root in ("auto", None) else Path(root).resolve()
    return (base / p).resolve()


class YoloxPipeline:
    """
    Inference -> output copy (direct or texture readback) -> decode -> NMS.

    Resources for the readback path are acquired in `init()` and released in
    `shutdown()`; use the pipeline as a context manager to release them on every
    exit path.

        with YoloxPipeline(backend.infer, colormap) as pipe:
            detections = pipe(blob)
    """

    def __init__(
        self,
        infer_fn: Callable[[np.ndarray], np.ndarray],
        colormap: Sequence[ColorMapEntry],
        config: YoloxConfig = YoloxConfig(),
        *,
        transfer: Optional[ReadbackTransfer] = None,
        backend: Optional[object] = None,
        backend_name: Optional[str] = None,
        on_readback_error: Optional[Callable[[Exception], None]] = None,
    ):
        self._infer_fn = infer_fn
        self.config = config
        self.post = YoloxPostprocessor(config.post_config(), colormap)
        self.grid = GridStrideCache(config.strides)
        self.transfer = transfer
        self.backend = backend
        self.backend_name = backend_name
        self.supports_async_transfer = config.supports_async_transfer
        self._on_readback_error = on_readback_error

        self._channel: Optional[ReadbackChannel] = None
        self._output: Optional[np.ndarray] = None
        self._active = False

    @property
    def proposal_length(self) -> int:
        return self.post.proposal_length

    @property
    def grid_table(self) -> GridStrideTable:
        return self.grid.table

    @property
    def active(self) -> bool:
        return self._active

    @property
    def channel(self) -> Optional[ReadbackChannel]:
        return self._channel

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    def init(self) -> "YoloxPipeline":
        if self._active:
            return self
        if self.supports_async_transfer and (self.transfer is None or not self.transfer.supported):
            LOGGER.info("Async readback not supported. Defaulting to synchronous readback")
            self.supports_async_transfer = False
        if self.supports_async_transfer:
            self._channel = ReadbackChannel(self.proposal_length, on_error=self._on_readback_error)
        self._active = True
        return self

    def shutdown(self) -> None:
        if self._channel is not None:
            self._channel.close()
            self._channel = None
        self._output = None
        self._active = False

    def __enter__(self) -> "YoloxPipeline":
        return self.init()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    # ------------------------------------------------------------------ #
    # Frame steps
    # ------------------------------------------------------------------ #
    def crop_input_dims(self, dims: Tuple[int, int]) -> Tuple[int, int]:
        """(width, height) trimmed to a multiple of the largest stride."""
        return crop_to_stride_multiple(dims, self.config.max_stride)

    def execute(self, blob: np.ndarray) -> np.ndarray:
        """
        Run the model on an NCHW blob and refresh the grid table if the output
        implies a different cell count (input resolution changed).
        """

        if not self._active:
            raise RuntimeError("Pipeline is not initialized; call init() or use it as a context manager.")
        if blob is None or not hasattr(blob, "shape"):
            raise TypeError("blob must be a NumPy array (N, C, H, W).")
        if blob.ndim != 4:
            raise ValueError(f"Expected blob shape (N, C, H, W), got {blob.shape}")

        height, width = int(blob.shape[2]), int(blob.shape[3])
        output = np.asarray(self._infer_fn(blob), dtype=np.float32).reshape(-1)
        self._output = output
        self.grid.ensure(output.size, self.proposal_length, height, width)
        return output

    def _require_output(self) -> np.ndarray:
        if self._output is None:
            raise RuntimeError("No model output available; call execute() first.")
        return self._output

    def copy_output_to_array(self) -> np.ndarray:
        return self._require_output().copy()

    def copy_output_with_async_readback(self) -> Optional[np.ndarray]:
        """
        Push the current output through the texture readback path.

        Returns the newest reconstructed readback (usually from a previous frame),
        or None when no valid readback has completed yet. Falls back to the
        synchronous copy when async transfer is unavailable.
        """

        if not self.supports_async_transfer or self._channel is None or self.transfer is None:
            return self.copy_output_to_array()

        output = self._require_output()
        width = self.proposal_length
        height = output.size // width
        pixel_format = self.config.pixel_format
        try:
            self.transfer.blit(output, width, height, pixel_format)
            request = self._channel.next_request(width, height, pixel_format)
            try:
                self.transfer.request(request, self._channel.on_complete)
            except UnsupportedTransferPath:
                self._channel.cancel(request.request_id)
                raise
        except UnsupportedTransferPath as exc:
            LOGGER.info("Async readback not supported (%s). Defaulting to synchronous readback", exc)
            self.supports_async_transfer = False
            self._channel.close()
            self._channel = None
            return self.copy_output_to_array()

        latest = self._channel.take_latest()
        if latest is not None and latest.size != len(self.grid.table) * self.proposal_length:
            LOGGER.debug("Dropping readback of %d values from a previous input resolution.", latest.size)
            return None
        return latest

    def read_output(self) -> Optional[np.ndarray]:
        if self.supports_async_transfer:
            return self.copy_output_with_async_readback()
        return self.copy_output_to_array()

    def process_output(self, output: np.ndarray) -> List[BBox2DInfo]:
        return self.post.process(output, self.grid.table)

    def __call__(self, blob: np.ndarray) -> List[BBox2DInfo]:
        self.execute(blob)
        output = self.read_output()
        if output is None:
            return []
        return self.process_output(output)


def load_pipeline(
    model_path: PathLike,
    colormap: Union[PathLike, Sequence[ColorMapEntry]],
    *,
    config: YoloxConfig = YoloxConfig(),
    backend: Optional[str] = None,
    root: Optional[PathLike] = "auto",
    transfer: Optional[ReadbackTransfer] = None,
    onnx_providers: Optional[Sequence[str]] = None,
    onnx_input_name: Optional[str] = None,
    onnx_output_name: Optional[str] = None,
    torch_device: str = "cpu",
    torch_output_index: int = 0,
) -> YoloxPipeline:
    """
    Create a pipeline for a YOLOX model on disk.

        pipe = load_pipeline("models/yolox_tiny.onnx", "models/colormap.json")

    Args:
        model_path: relative paths resolve against the project root by default
        colormap: path to the colormap JSON, or already-loaded entries
        backend: "onnxruntime" / "torchscript", or None to infer from the extension
    """

    resolved = resolve_path(model_path, root=root)
    if isinstance(colormap, (str, Path)):
        entries = load_colormap(resolve_path(colormap, root=root))
    else:
        entries = list(colormap)

    chosen = backend
    if chosen is None:
        suffix = resolved.suffix.lower()
        if suffix == ".onnx":
            chosen = "onnxruntime"
        elif suffix in {".torchscript", ".ts", ".pt"}:
            chosen = "torchscript"
        else:
            raise ValueError(f"Could not infer backend from extension '{suffix}'. Pass backend=... explicitly.")

    chosen = chosen.lower()
    if chosen == "onnxruntime":
        from .backends.onnxruntime_backend import OnnxRuntimeBackend, OnnxRuntimeBackendConfig

        infer_backend = OnnxRuntimeBackend(
            resolved,
            OnnxRuntimeBackendConfig(
                providers=onnx_providers,
                input_name=onnx_input_name,
                output_name=onnx_output_name,
            ),
        )
    elif chosen == "torchscript":
        from .backends.torchscript_backend import TorchScriptBackend, TorchScriptBackendConfig

        infer_backend = TorchScriptBackend(
            resolved,
            TorchScriptBackendConfig(device=torch_device, output_index=torch_output_index),
        )
    else:
        raise ValueError(f"Unsupported backend: {backend!r}")

    LOGGER.info("Loaded %s model from %s", chosen, resolved)
    return YoloxPipeline(
        infer_backend.infer,
        entries,
        config,
        transfer=transfer,
        backend=infer_backend,
        backend_name=chosen,
    )
