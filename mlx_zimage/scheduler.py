# Copyright © 2025 Apple Inc.

import json
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import mlx.core as mx

from .models.base import BaseModelArgs


@dataclass
class SchedulerConfig(BaseModelArgs):
    num_train_timesteps: int = 1000
    shift: float = 1.0
    use_dynamic_shifting: bool = False
    base_shift: float = 0.5
    max_shift: float = 1.15
    base_image_seq_len: int = 256
    max_image_seq_len: int = 4096

    def __post_init__(self):
        if self.num_train_timesteps <= 0:
            raise ValueError(
                f"num_train_timesteps must be positive, got {self.num_train_timesteps}"
            )
        if self.shift <= 0:
            raise ValueError(f"shift must be positive, got {self.shift}")
        if self.max_image_seq_len == self.base_image_seq_len:
            raise ValueError("max_image_seq_len must differ from base_image_seq_len")

    # The null entries of a diffusers config fall back to the defaults
    @classmethod
    def from_dict(cls, params):
        return super().from_dict({k: v for k, v in params.items() if v is not None})


def load_scheduler_config(path: Union[str, Path]) -> SchedulerConfig:
    """Load a diffusers-style ``scheduler_config.json``.

    ``path`` may be the file itself or a model directory containing a
    ``scheduler/scheduler_config.json``.
    """
    path = Path(path)
    if path.is_dir():
        path = path / "scheduler" / "scheduler_config.json"
    with open(path, "r") as fid:
        return SchedulerConfig.from_dict(json.load(fid))


def calculate_shift(
    image_seq_len: int,
    base_seq_len: int = 256,
    max_seq_len: int = 4096,
    base_shift: float = 0.5,
    max_shift: float = 1.15,
) -> float:
    """Linearly interpolate the schedule shift ``mu`` for a latent grid size."""
    m = (max_shift - base_shift) / (max_seq_len - base_seq_len)
    b = base_shift - m * base_seq_len
    return image_seq_len * m + b


def time_shift(mu: float, sigmas: mx.array) -> mx.array:
    return math.exp(mu) / (math.exp(mu) + (1 / sigmas - 1))


def static_shift(shift: float, sigmas: mx.array) -> mx.array:
    return shift * sigmas / (1 + (shift - 1) * sigmas)


class FlowMatchEulerScheduler:
    """
    Euler integrator for the flow-matching ODE.

    The schedule is fixed at construction. ``timesteps`` holds one descending
    timestep per inference step in ``[0, num_train_timesteps]`` and ``sigmas``
    the matching noise levels followed by a terminal ``0``.

    Args:
        num_inference_steps (int): Number of denoising steps.
        config (SchedulerConfig): The scheduler configuration.
        mu (float, optional): Resolution dependent shift. Required when
          ``config.use_dynamic_shifting`` is set, ignored otherwise.
    """

    def __init__(
        self,
        num_inference_steps: int,
        config: Optional[SchedulerConfig] = None,
        mu: Optional[float] = None,
    ):
        config = config or SchedulerConfig()
        if num_inference_steps <= 0:
            raise ValueError(
                f"num_inference_steps must be positive, got {num_inference_steps}"
            )
        if config.use_dynamic_shifting and mu is None:
            raise ValueError("mu is required when use_dynamic_shifting is enabled")

        self.config = config
        self.num_inference_steps = num_inference_steps
        self.mu = mu if config.use_dynamic_shifting else None

        N = config.num_train_timesteps
        train_sigmas = mx.linspace(1, N, N)[::-1] / N
        if not config.use_dynamic_shifting:
            train_sigmas = static_shift(config.shift, train_sigmas)
        sigma_max = train_sigmas[0].item()
        sigma_min = train_sigmas[-1].item()

        sigmas = mx.linspace(sigma_max * N, sigma_min * N, num_inference_steps) / N
        if self.mu is not None:
            sigmas = time_shift(self.mu, sigmas)
        else:
            sigmas = static_shift(config.shift, sigmas)

        self.timesteps = sigmas * N
        self.sigmas = mx.concatenate([sigmas, mx.zeros((1,), dtype=sigmas.dtype)])
        mx.eval(self.timesteps, self.sigmas)

    def step(
        self, model_output: mx.array, timestep_index: int, sample: mx.array
    ) -> mx.array:
        """
        Advance ``sample`` by one Euler step.

        Args:
            model_output (mx.array): The (sign corrected) velocity prediction.
            timestep_index (int): Index into ``timesteps``.
            sample (mx.array): The current latent.

        Returns:
            mx.array: The latent at the next noise level.
        """
        if not 0 <= timestep_index < self.num_inference_steps:
            raise IndexError(
                f"timestep_index {timestep_index} out of range for "
                f"{self.num_inference_steps} steps"
            )
        sigma = self.sigmas[timestep_index]
        sigma_next = self.sigmas[timestep_index + 1]
        prev_sample = sample.astype(mx.float32) + (sigma_next - sigma) * model_output
        return prev_sample.astype(sample.dtype)
