# Copyright © 2025 Apple Inc.

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional, Tuple

import mlx.core as mx
import mlx.nn as nn

from .denoise import run_denoising
from .generate import PromptEnhanceConfig, enhance_prompt
from .scheduler import FlowMatchEulerScheduler, SchedulerConfig, calculate_shift
from .tokenizer_utils import TokenizerWrapper

logger = logging.getLogger(__name__)

RECOMMENDED_WIDTH = 1024
RECOMMENDED_HEIGHT = 1024
RECOMMENDED_STEPS = 9
RECOMMENDED_GUIDANCE_SCALE = 0.0


class PipelineError(RuntimeError):
    pass


@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    negative_prompt: Optional[str] = None
    width: int = RECOMMENDED_WIDTH
    height: int = RECOMMENDED_HEIGHT
    steps: int = RECOMMENDED_STEPS
    guidance_scale: float = RECOMMENDED_GUIDANCE_SCALE
    seed: Optional[int] = None
    max_sequence_length: int = 512
    enhance_prompt: bool = False
    enhance_max_tokens: int = 512

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ValueError(
                f"width and height must be positive, got {self.width}x{self.height}"
            )
        if self.steps <= 0:
            raise ValueError(f"steps must be positive, got {self.steps}")
        if self.max_sequence_length <= 0:
            raise ValueError(
                f"max_sequence_length must be positive, got {self.max_sequence_length}"
            )
        if self.enhance_max_tokens < 0:
            raise ValueError(
                f"enhance_max_tokens must be non-negative, got {self.enhance_max_tokens}"
            )

    @property
    def do_cfg(self) -> bool:
        return self.guidance_scale > 1.0


@dataclass
class GenerationResult:
    image: mx.array
    prompt: str
    peak_memory: float


class _StageHandle:
    def __init__(self, model):
        self.model = model


@contextmanager
def model_stage(name: str, loader: Callable[[], Any]) -> Iterator[_StageHandle]:
    """
    Hold one pipeline stage's weights for the duration of the block.

    The handle drops its model reference on exit and the device buffer cache
    is cleared so the next stage can be loaded into the freed memory. Use the
    model through ``handle.model`` only.
    """
    logger.info("Loading %s...", name)
    handle = _StageHandle(loader())
    try:
        yield handle
    finally:
        handle.model = None
        mx.clear_cache()
        logger.info("Released %s", name)


def denormalize(image: mx.array) -> mx.array:
    return mx.clip(image / 2 + 0.5, 0, 1)


class ZImagePipeline:
    """
    Text to image generation with staged model residency.

    The text encoder, diffusion transformer and VAE are loaded one at a time
    through the given loaders and released before the next one is loaded.

    Args:
        load_tokenizer: Returns the :class:`TokenizerWrapper`.
        load_text_encoder: Returns the Qwen text encoder. It is called as
          ``model(inputs, cache=cache)`` for prompt enhancement and provides
          ``encode(input_ids, attention_mask)`` returning one ``[L, D]``
          embedding per prompt.
        load_transformer: Returns the diffusion transformer, called as
          ``transformer(latents, timestep, prompt_embeds)``.
        load_vae: Returns the VAE, providing ``decode(latents)``.
          Loaders typically build the module and populate it with
          :func:`~mlx_zimage.weights.load_module_weights`.
        scheduler_config (SchedulerConfig, optional): The flow-match schedule.
        in_channels (int): Latent channels. Default: ``16``.
        latent_divisor (int): Pixel to latent downsampling. Default: ``8``.
    """

    def __init__(
        self,
        load_tokenizer: Callable[[], TokenizerWrapper],
        load_text_encoder: Callable[[], nn.Module],
        load_transformer: Callable[[], nn.Module],
        load_vae: Callable[[], nn.Module],
        scheduler_config: Optional[SchedulerConfig] = None,
        in_channels: int = 16,
        latent_divisor: int = 8,
    ):
        self.load_tokenizer = load_tokenizer
        self.load_text_encoder = load_text_encoder
        self.load_transformer = load_transformer
        self.load_vae = load_vae
        self.scheduler_config = scheduler_config or SchedulerConfig()
        self.in_channels = in_channels
        self.latent_divisor = latent_divisor

    def encode_prompt(
        self,
        prompt: str,
        tokenizer: TokenizerWrapper,
        text_encoder: nn.Module,
        max_length: int,
    ) -> mx.array:
        input_ids, attention_mask = tokenizer.encode_chat([prompt], max_length)
        embeddings = text_encoder.encode(input_ids, attention_mask)
        if len(embeddings) == 0:
            raise PipelineError("Text encoder returned no embeddings")
        return embeddings[0][None]

    def _encode_text(
        self, request: GenerationRequest, tokenizer: TokenizerWrapper
    ) -> Tuple[str, mx.array, Optional[mx.array]]:
        prompt = request.prompt
        with model_stage("text encoder", self.load_text_encoder) as stage:
            if request.enhance_prompt:
                logger.info(
                    "Enhancing prompt using LLM (max tokens: %d)...",
                    request.enhance_max_tokens,
                )
                config = PromptEnhanceConfig(max_new_tokens=request.enhance_max_tokens)
                enhanced = enhance_prompt(stage.model, prompt, tokenizer, config)
                if enhanced:
                    logger.info("Enhanced prompt: %s", enhanced)
                    prompt = enhanced
                else:
                    logger.warning(
                        "Prompt enhancement incomplete (need more tokens), "
                        "using original prompt"
                    )
                mx.clear_cache()

            prompt_embeds = self.encode_prompt(
                prompt, tokenizer, stage.model, request.max_sequence_length
            )
            negative_embeds = None
            if request.do_cfg:
                negative_embeds = self.encode_prompt(
                    request.negative_prompt or "",
                    tokenizer,
                    stage.model,
                    request.max_sequence_length,
                )
                mx.eval(prompt_embeds, negative_embeds)
            else:
                mx.eval(prompt_embeds)
        return prompt, prompt_embeds, negative_embeds

    def latent_shape(self, request: GenerationRequest) -> Tuple[int, int, int, int]:
        latent_h = max(1, request.height // self.latent_divisor)
        latent_w = max(1, request.width // self.latent_divisor)
        return (1, self.in_channels, latent_h, latent_w)

    def make_scheduler(self, request: GenerationRequest) -> FlowMatchEulerScheduler:
        config = self.scheduler_config
        mu = None
        if config.use_dynamic_shifting:
            _, _, latent_h, latent_w = self.latent_shape(request)
            mu = calculate_shift(
                latent_h * latent_w,
                base_seq_len=config.base_image_seq_len,
                max_seq_len=config.max_image_seq_len,
                base_shift=config.base_shift,
                max_shift=config.max_shift,
            )
        return FlowMatchEulerScheduler(request.steps, config, mu=mu)

    def _denoise(
        self,
        request: GenerationRequest,
        prompt_embeds: mx.array,
        negative_embeds: Optional[mx.array],
        verbose: bool,
    ) -> mx.array:
        key = mx.random.key(request.seed) if request.seed is not None else None
        latents = mx.random.normal(self.latent_shape(request), key=key)
        scheduler = self.make_scheduler(request)

        with model_stage("transformer", self.load_transformer) as stage:
            latents = run_denoising(
                stage.model,
                latents,
                prompt_embeds,
                scheduler,
                guidance_scale=request.guidance_scale,
                negative_embeds=negative_embeds,
                verbose=verbose,
            )
        return latents

    def _decode(self, request: GenerationRequest, latents: mx.array) -> mx.array:
        with model_stage("VAE", self.load_vae) as stage:
            image = stage.model.decode(latents)
            height, width = image.shape[2], image.shape[3]
            if (height, width) != (request.height, request.width):
                scale = (request.height / height, request.width / width)
                upsample = nn.Upsample(scale_factor=scale, mode="nearest")
                image = upsample(image.transpose(0, 2, 3, 1)).transpose(0, 3, 1, 2)
            image = denormalize(image)
            mx.eval(image)
        return image

    def generate(
        self, request: GenerationRequest, verbose: bool = False
    ) -> GenerationResult:
        logger.info("Requested Z-Image generation")
        if request.do_cfg and request.negative_prompt is None:
            logger.info("No negative prompt given, guiding against the empty prompt")

        tokenizer = self.load_tokenizer()
        prompt, prompt_embeds, negative_embeds = self._encode_text(request, tokenizer)
        logger.info("Text encoding complete")

        latents = self._denoise(request, prompt_embeds, negative_embeds, verbose)
        logger.info("Denoising complete")

        image = self._decode(request, latents)
        return GenerationResult(
            image=image,
            prompt=prompt,
            peak_memory=mx.get_peak_memory() / 1e9,
        )
