from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Union

import numpy as np


LOGGER = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass(frozen=True)
class TorchScriptBackendConfig:
    """
    - device: "cpu" or "cuda"
    - output_index: which output to use when the module returns a tuple/list
    """

    device: str = "cpu"
    output_index: int = 0


class TorchScriptBackend:
    """
    YOLOX runner for modules exported with `torch.jit.trace` / `torch.jit.script`
    in decode-free mode. Returns the output flattened to float32 on the CPU.
    """

    def __init__(self, model_path: PathLike, cfg: TorchScriptBackendConfig = TorchScriptBackendConfig()):
        try:
            import torch  # type: ignore
        except Exception as e:  # pragma: no cover
            raise ImportError("torch is required for the TorchScript backend. Install with `pip install torch`.") from e

        self._torch = torch
        self.model_path = Path(model_path)
        if not self.model_path.exists():
            raise FileNotFoundError(str(self.model_path))

        self.device = torch.device(cfg.device)
        self.output_index = cfg.output_index

        model = torch.jit.load(str(self.model_path), map_location=self.device)
        model.eval()
        self.model = model
        LOGGER.debug("TorchScript module %s on %s", self.model_path.name, self.device)

    def infer(self, blob: np.ndarray) -> np.ndarray:
        torch = self._torch
        x = torch.as_tensor(blob, device=self.device).float().contiguous()

        with torch.no_grad():
            y = self.model(x)

        if isinstance(y, (tuple, list)):
            y = y[self.output_index]
        return y.detach().to("cpu").float().numpy().reshape(-1)
