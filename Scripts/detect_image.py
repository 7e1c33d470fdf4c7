from __future__ import annotations

import argparse
import logging
import time
from dataclasses import replace
from pathlib import Path

import cv2
import numpy as np

from yolox_kit import ThreadedReadbackTransfer, YoloxConfig, draw_detections, load_config, load_pipeline


def _make_blob(image_bgr: np.ndarray, width: int, height: int, rgb01: bool) -> np.ndarray:
    resized = cv2.resize(image_bgr, (width, height), interpolation=cv2.INTER_LINEAR)
    if rgb01:
        img = resized[:, :, ::-1].astype(np.float32) / 255.0
    else:
        # Classic YOLOX exports take raw BGR 0-255.
        img = resized.astype(np.float32)
    return np.ascontiguousarray(np.transpose(img, (2, 0, 1))[None, ...])


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a YOLOX model on one image and draw the detections.")
    parser.add_argument("--image", required=True, help="Path to an input image.")
    parser.add_argument("--model", required=True, help="Path to a YOLOX model (.onnx / .torchscript).")
    parser.add_argument("--colormap", required=True, help="Colormap JSON with class labels and colors.")
    parser.add_argument("--config", default=None, help="Optional JSON config (thresholds, strides, ...).")
    parser.add_argument("--backend", default=None, help="Force backend: onnxruntime / torchscript.")
    parser.add_argument("--imgsz", type=int, default=640, help="Model input size before stride cropping.")
    parser.add_argument("--rgb01", action="store_true", help="Feed RGB scaled to [0, 1] instead of raw BGR.")
    parser.add_argument("--async-readback", action="store_true", help="Route the output through the texture readback path.")
    parser.add_argument("--out", default=None, help="Where to write the annotated image.")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    image = cv2.imread(args.image)
    if image is None:
        raise FileNotFoundError(f"Could not read image at path: {args.image}")

    config = load_config(Path(args.config)) if args.config else YoloxConfig()
    if args.async_readback:
        config = replace(config, supports_async_transfer=True)
        transfer = ThreadedReadbackTransfer()
    else:
        transfer = None

    pipeline = load_pipeline(
        args.model,
        args.colormap,
        config=config,
        backend=args.backend,
        root=".",
        transfer=transfer,
    )

    with pipeline:
        width, height = pipeline.crop_input_dims((args.imgsz, args.imgsz))
        blob = _make_blob(image, width, height, args.rgb01)

        detections = pipeline(blob)
        if args.async_readback:
            # Readback results arrive one frame late; run the same frame again.
            for _ in range(10):
                if detections:
                    break
                time.sleep(0.01)
                detections = pipeline(blob)

    if transfer is not None:
        transfer.close()

    for det in detections:
        x1, y1, x2, y2 = det.as_xyxy()
        print(f"{det.label:>16s} {det.bbox.score:.3f} [{x1:.1f}, {y1:.1f}, {x2:.1f}, {y2:.1f}]")
    print(f"detections={len(detections)} input={width}x{height} backend={pipeline.backend_name}")

    if args.out:
        scale = (image.shape[1] / width, image.shape[0] / height)
        annotated = draw_detections(image, detections, scale=scale)
        cv2.imwrite(args.out, annotated)
        print(f"Wrote {args.out}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
