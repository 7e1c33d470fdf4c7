from __future__ import annotations

import argparse
import logging
import statistics
import time
from dataclasses import dataclass
from typing import List

import numpy as np

from yolox_kit import (
    NUM_BBOX_FIELDS,
    NMSConfig,
    crop_to_stride_multiple,
    decode_proposals,
    generate_grid_strides,
    nms,
    reconstruct,
    to_texture_encoding,
)


@dataclass(frozen=True)
class TimingSummary:
    n: int
    mean_ms: float
    p50_ms: float
    p95_ms: float


def _percentile(sorted_values: List[float], q: float) -> float:
    if not sorted_values:
        raise ValueError("No values provided.")
    if len(sorted_values) == 1:
        return float(sorted_values[0])
    pos = (q / 100.0) * (len(sorted_values) - 1)
    lo = int(np.floor(pos))
    hi = int(np.ceil(pos))
    t = pos - lo
    return float(sorted_values[lo] * (1.0 - t) + sorted_values[hi] * t)


def _summarize_ms(values_s: List[float]) -> TimingSummary:
    ms = sorted(v * 1000.0 for v in values_s)
    return TimingSummary(
        n=len(ms),
        mean_ms=float(statistics.fmean(ms)),
        p50_ms=_percentile(ms, 50.0),
        p95_ms=_percentile(ms, 95.0),
    )


def _format_summary(label: str, s: TimingSummary) -> str:
    return f"{label}: n={s.n} mean={s.mean_ms:.3f}ms p50={s.p50_ms:.3f}ms p95={s.p95_ms:.3f}ms"


def _synthetic_output(cells: int, classes: int, positives: int, rng: np.random.Generator) -> np.ndarray:
    """
    Mostly-background raw output with `positives` confident cells.
    """

    props = np.zeros((cells, NUM_BBOX_FIELDS + classes), dtype=np.float32)
    props[:, 0:2] = rng.uniform(0.0, 1.0, size=(cells, 2))
    props[:, 2:4] = rng.uniform(0.0, 2.0, size=(cells, 2))
    props[:, 4] = rng.uniform(0.0, 0.2, size=cells)
    props[:, NUM_BBOX_FIELDS:] = rng.uniform(0.0, 0.3, size=(cells, classes))

    hot = rng.choice(cells, size=min(positives, cells), replace=False)
    props[hot, 4] = rng.uniform(0.7, 1.0, size=hot.size)
    props[hot, NUM_BBOX_FIELDS + rng.integers(0, classes, size=hot.size)] = rng.uniform(0.7, 1.0, size=hot.size)
    return props.reshape(-1)


def main() -> int:
    parser = argparse.ArgumentParser(description="Benchmark YOLOX decode, NMS and readback reconstruction on synthetic output.")
    parser.add_argument("--width", type=int, default=640, help="Model input width (cropped to the largest stride).")
    parser.add_argument("--height", type=int, default=640, help="Model input height (cropped to the largest stride).")
    parser.add_argument("--classes", type=int, default=80, help="Number of classes.")
    parser.add_argument("--positives", type=int, default=200, help="Number of confident cells in the synthetic output.")
    parser.add_argument("--conf", type=float, default=0.5, help="Confidence threshold.")
    parser.add_argument("--iou", type=float, default=0.45, help="IoU threshold for NMS.")
    parser.add_argument("--warmup", type=int, default=5, help="Warmup iterations to run but not record.")
    parser.add_argument("--repeats", type=int, default=50, help="Recorded iterations.")
    parser.add_argument("--seed", type=int, default=0)
    args = parser.parse_args()

    if args.classes < 1:
        raise ValueError("--classes must be >= 1")
    if args.repeats < 1:
        raise ValueError("--repeats must be >= 1")
    if args.warmup < 0:
        raise ValueError("--warmup must be >= 0")

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s: %(message)s")

    strides = (8, 16, 32)
    width, height = crop_to_stride_multiple((args.width, args.height), max(strides))
    table = generate_grid_strides(strides, height, width)
    proposal_length = NUM_BBOX_FIELDS + args.classes

    rng = np.random.default_rng(args.seed)
    raw = _synthetic_output(len(table), args.classes, args.positives, rng)
    pixels = to_texture_encoding(raw, proposal_length)
    nms_cfg = NMSConfig(iou_threshold=float(args.iou))

    t_recon: List[float] = []
    t_decode: List[float] = []
    t_nms: List[float] = []
    kept = 0
    for it in range(args.warmup + args.repeats):
        t0 = time.perf_counter()
        restored = reconstruct(pixels, proposal_length)
        t1 = time.perf_counter()
        boxes = decode_proposals(restored, table, args.classes, float(args.conf))
        t2 = time.perf_counter()
        keep = nms(boxes, nms_cfg)
        t3 = time.perf_counter()

        if it < args.warmup:
            continue
        t_recon.append(t1 - t0)
        t_decode.append(t2 - t1)
        t_nms.append(t3 - t2)
        kept = len(keep)

    print(f"input={width}x{height} cells={len(table)} proposal_length={proposal_length}")
    print(_format_summary("reconstruct", _summarize_ms(t_recon)))
    print(_format_summary("decode", _summarize_ms(t_decode)))
    print(_format_summary("nms", _summarize_ms(t_nms)))
    print(f"kept={kept}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
