"""
Texture readback path for YOLOX outputs.

When the output tensor is copied into a single-channel render texture and read
back asynchronously, each pixel's red channel holds one value and the proposal
rows come back bottom-to-top. `reconstruct` undoes that packing so the result
has the same layout as a direct buffer copy.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Union

import numpy as np

from .errors import ReadbackFailed, ShapeMismatch, UnsupportedTransferPath

LOGGER = logging.getLogger(__name__)

PixelData = Union[bytes, bytearray, memoryview, np.ndarray]


class PixelFormat(str, enum.Enum):
    R16F = "r16f"
    R32F = "r32f"

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(np.float16) if self is PixelFormat.R16F else np.dtype(np.float32)


@dataclass(frozen=True)
class ReadbackRequest:
    request_id: int
    width: int
    height: int
    pixel_format: PixelFormat = PixelFormat.R32F

    @property
    def pixel_count(self) -> int:
        return self.width * self.height


@dataclass(frozen=True)
class ReadbackResponse:
    request_id: int
    has_error: bool = False
    data: Optional[PixelData] = None
    error: Optional[str] = None


CompletionCallback = Callable[[ReadbackResponse], None]


def _check_proposal_length(values: np.ndarray, proposal_length: int) -> None:
    if proposal_length <= 0:
        raise ShapeMismatch(f"proposal_length must be > 0, got {proposal_length}")
    if values.size % proposal_length:
        raise ShapeMismatch(
            f"Pixel buffer of {values.size} values is not a multiple of proposal_length={proposal_length}."
        )


def reconstruct(pixels: np.ndarray, proposal_length: int) -> np.ndarray:
    """
    Recover the logical output layout from texture readback pixels.

    Two steps, both required: reverse the whole buffer (rows were stored
    bottom-to-top), then reverse each `proposal_length` chunk (the first step
    also flipped the field order inside each proposal).
    """

    flat = np.asarray(pixels, dtype=np.float32).reshape(-1)
    _check_proposal_length(flat, proposal_length)

    flipped = flat[::-1]
    return np.ascontiguousarray(flipped.reshape(-1, proposal_length)[:, ::-1]).reshape(-1)


def to_texture_encoding(values: np.ndarray, proposal_length: int) -> np.ndarray:
    """
    Pack a flat output vector the way the texture copy stores it: one proposal per
    row, rows bottom-to-top. `reconstruct` is its exact inverse.
    """

    flat = np.asarray(values, dtype=np.float32).reshape(-1)
    _check_proposal_length(flat, proposal_length)
    return np.ascontiguousarray(flat.reshape(-1, proposal_length)[::-1]).reshape(-1)


def decode_pixels(data: Optional[PixelData], pixel_format: PixelFormat) -> np.ndarray:
    """
    Red-channel values of a readback payload as float32.

    Accepts a raw byte buffer in `pixel_format` or an already-typed float array.
    """

    if data is None:
        raise ShapeMismatch("Readback payload is empty.")
    if isinstance(data, np.ndarray) and data.dtype.kind == "f":
        return data.reshape(-1).astype(np.float32)

    buf = memoryview(data).cast("B")
    itemsize = pixel_format.dtype.itemsize
    if buf.nbytes % itemsize:
        raise ShapeMismatch(f"Payload of {buf.nbytes} bytes is not a whole number of {pixel_format.value} pixels.")
    return np.frombuffer(buf, dtype=pixel_format.dtype).astype(np.float32)


class ReadbackTransfer(ABC):
    """
    Render-target side of the readback path.

    `blit` copies the output tensor into the texture; `request` starts a
    non-blocking transfer of that texture and calls `on_complete` later, possibly
    from another thread.
    """

    @property
    def supported(self) -> bool:
        return True

    @abstractmethod
    def blit(self, values: np.ndarray, width: int, height: int, pixel_format: PixelFormat) -> None:
        ...

    @abstractmethod
    def request(self, request: ReadbackRequest, on_complete: CompletionCallback) -> None:
        ...

    def close(self) -> None:
        pass


class ThreadedReadbackTransfer(ReadbackTransfer):
    """
    In-process transfer: the "texture" is a host array and each request is served
    on its own worker thread after `latency_s`.
    """

    def __init__(self, latency_s: float = 0.0, available: bool = True):
        self.latency_s = latency_s
        self._available = available
        self._lock = threading.Lock()
        self._texture: Optional[np.ndarray] = None
        self._workers: List[threading.Thread] = []

    @property
    def supported(self) -> bool:
        return self._available

    def blit(self, values: np.ndarray, width: int, height: int, pixel_format: PixelFormat) -> None:
        if not self._available:
            raise UnsupportedTransferPath("Texture readback is not available on this transfer.")
        encoded = to_texture_encoding(values, width)
        if encoded.size != width * height:
            raise ShapeMismatch(f"Cannot blit {encoded.size} values into a {width}x{height} texture.")
        with self._lock:
            self._texture = encoded.astype(pixel_format.dtype).reshape(height, width)

    def request(self, request: ReadbackRequest, on_complete: CompletionCallback) -> None:
        if not self._available:
            raise UnsupportedTransferPath("Async readback is not available on this transfer.")
        with self._lock:
            texture = None if self._texture is None else self._texture.copy()

        worker = threading.Thread(
            target=self._serve,
            args=(request, texture, on_complete),
            name=f"readback-{request.request_id}",
            daemon=True,
        )
        self._workers = [w for w in self._workers if w.is_alive()]
        self._workers.append(worker)
        worker.start()

    def _serve(self, request: ReadbackRequest, texture: Optional[np.ndarray], on_complete: CompletionCallback) -> None:
        if self.latency_s > 0:
            time.sleep(self.latency_s)

        if texture is None:
            response = ReadbackResponse(request.request_id, has_error=True, error="texture was never written")
        elif texture.shape != (request.height, request.width) or texture.dtype != request.pixel_format.dtype:
            response = ReadbackResponse(
                request.request_id,
                has_error=True,
                error=f"texture is {texture.shape[1]}x{texture.shape[0]} {texture.dtype}, "
                f"request wants {request.width}x{request.height} {request.pixel_format.value}",
            )
        else:
            response = ReadbackResponse(request.request_id, data=texture.tobytes())
        on_complete(response)

    def close(self, timeout: Optional[float] = 5.0) -> None:
        for worker in self._workers:
            worker.join(timeout)
        self._workers = []


class ReadbackChannel:
    """
    Correlates readback requests with their completions and owns the destination
    buffer of reconstructed data.

    Every request gets a monotonically increasing id. A completion is accepted only
    if its id is still pending and newer than the last accepted one; anything else
    is stale and dropped. After `close()` completions are ignored.
    """

    def __init__(
        self,
        proposal_length: int,
        on_error: Optional[Callable[[ReadbackFailed], None]] = None,
    ):
        if proposal_length <= 0:
            raise ShapeMismatch(f"proposal_length must be > 0, got {proposal_length}")
        self.proposal_length = proposal_length
        self._on_error = on_error
        self._lock = threading.Lock()
        self._next_id = 0
        self._pending: Dict[int, ReadbackRequest] = {}
        self._last_accepted_id = 0
        self._latest: Optional[np.ndarray] = None
        self._last_error: Optional[ReadbackFailed] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def last_error(self) -> Optional[ReadbackFailed]:
        return self._last_error

    def next_request(self, width: int, height: int, pixel_format: PixelFormat = PixelFormat.R32F) -> ReadbackRequest:
        with self._lock:
            if self._closed:
                raise RuntimeError("ReadbackChannel is closed.")
            self._next_id += 1
            request = ReadbackRequest(self._next_id, width, height, pixel_format)
            self._pending[request.request_id] = request
        return request

    def cancel(self, request_id: int) -> None:
        with self._lock:
            self._pending.pop(request_id, None)

    def on_complete(self, response: ReadbackResponse) -> None:
        """
        Completion handler handed to the transfer. Never raises.
        """

        try:
            failure = self._accept(response)
            if failure is not None and self._on_error is not None:
                self._on_error(failure)
        except Exception:
            LOGGER.exception("Readback completion handler failed for request %s", response.request_id)

    def _accept(self, response: ReadbackResponse) -> Optional[ReadbackFailed]:
        with self._lock:
            if self._closed:
                LOGGER.debug("Readback %s completed after close; ignoring.", response.request_id)
                return None

            request = self._pending.pop(response.request_id, None)
            if request is None or response.request_id <= self._last_accepted_id:
                LOGGER.debug("Discarding stale readback %s.", response.request_id)
                return None

            self._last_accepted_id = response.request_id
            for rid in [rid for rid in self._pending if rid < response.request_id]:
                del self._pending[rid]

            if response.has_error:
                failure = ReadbackFailed(
                    f"GPU readback error for request {response.request_id}: {response.error or 'unknown'}",
                    request_id=response.request_id,
                )
                LOGGER.warning("%s", failure)
                self._last_error = failure
                self._latest = None
                return failure

            pixels = decode_pixels(response.data, request.pixel_format)
            if pixels.size != request.pixel_count:
                LOGGER.info(
                    "Readback %s returned %d pixels for a %dx%d texture; waiting for a matching transfer.",
                    response.request_id,
                    pixels.size,
                    request.width,
                    request.height,
                )
                self._latest = None
                return None

            self._latest = reconstruct(pixels, self.proposal_length)
            return None

    def take_latest(self) -> Optional[np.ndarray]:
        """
        Pop the newest reconstructed output, or None if nothing new has arrived.
        """

        with self._lock:
            latest, self._latest = self._latest, None
        return latest

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._pending.clear()
            self._latest = None
