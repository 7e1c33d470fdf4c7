"""
Optional inference backends for yolox_kit.

Each backend turns an NCHW float32 blob into the flat YOLOX output vector
(`cells * (5 + classes)` values). They live in their own modules so decoding and
readback reconstruction can be used without any inference runtime installed.
"""

from __future__ import annotations

__all__ = []
