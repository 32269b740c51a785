# Copyright © 2025 Apple Inc.

import logging
from typing import Callable, Optional

import mlx.core as mx
from tqdm import tqdm

from .scheduler import FlowMatchEulerScheduler

logger = logging.getLogger(__name__)


def apply_guidance(
    noise_pred: mx.array, batch_size: int, guidance_scale: float
) -> mx.array:
    """
    Combine a stacked ``[positive; negative]`` prediction with
    classifier-free guidance.

    Args:
        noise_pred (mx.array): Model output of batch ``2 * batch_size`` with
          the conditional half first.
        batch_size (int): The batch size of the latent before stacking.
        guidance_scale (float): The guidance strength.

    Returns:
        mx.array: ``positive + guidance_scale * (positive - negative)``.
    """
    positive = noise_pred[:batch_size]
    negative = noise_pred[batch_size : 2 * batch_size]
    return positive + guidance_scale * (positive - negative)


def run_denoising(
    transformer: Callable[[mx.array, mx.array, mx.array], mx.array],
    latents: mx.array,
    prompt_embeds: mx.array,
    scheduler: FlowMatchEulerScheduler,
    guidance_scale: float = 0.0,
    negative_embeds: Optional[mx.array] = None,
    verbose: bool = False,
) -> mx.array:
    """
    Integrate the initial noise latent down to a clean latent.

    Classifier-free guidance runs when ``guidance_scale > 1`` and
    ``negative_embeds`` is given; the latent and embeddings are then stacked
    into a batch of two for a single forward call per step.

    Args:
        transformer: Called as ``transformer(latents, timestep, prompt_embeds)``
          with ``timestep`` of shape ``[1]`` in ``[0, 1]``.
        latents (mx.array): The initial latent ``[1, C, H, W]``.
        prompt_embeds (mx.array): The positive prompt embedding.
        scheduler (FlowMatchEulerScheduler): The precomputed schedule.
        guidance_scale (float): The guidance strength. Default: ``0.0``.
        negative_embeds (mx.array, optional): The negative prompt embedding.
        verbose (bool): Show a progress bar. Default: ``False``.

    Returns:
        mx.array: The final latent.
    """
    do_cfg = guidance_scale > 1.0 and negative_embeds is not None
    if do_cfg:
        embeds = mx.concatenate([prompt_embeds, negative_embeds], axis=0)
    else:
        embeds = prompt_embeds

    timesteps = scheduler.timesteps.tolist()
    logger.info(
        "Running %d denoising steps (cfg=%s, guidance_scale=%.2f)",
        len(timesteps),
        do_cfg,
        guidance_scale,
    )

    for i, t in enumerate(tqdm(timesteps, disable=not verbose)):
        timestep = mx.array([(1000.0 - t) / 1000.0])

        if do_cfg:
            model_latents = mx.concatenate([latents, latents], axis=0)
        else:
            model_latents = latents

        noise_pred = transformer(model_latents, timestep, embeds)
        if do_cfg:
            guided = apply_guidance(noise_pred, latents.shape[0], guidance_scale)
        else:
            guided = noise_pred

        # The transformer predicts the negated velocity
        latents = scheduler.step(-guided, i, latents)
        mx.eval(latents)

    return latents
