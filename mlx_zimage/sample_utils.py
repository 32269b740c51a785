# Copyright © 2023-2024 Apple Inc.

from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import mlx.core as mx


@dataclass(frozen=True)
class GenerationConfig:
    """Per-call sampling configuration.

    Args:
        max_tokens (int): Upper bound on generated tokens. Default: ``256``.
        temperature (float): Softmax temperature, ``0`` selects greedy decoding.
          Default: ``0.7``.
        top_p (float): Nucleus mass in ``[0, 1]``. Values strictly between 0 and
          1 enable nucleus sampling. Default: ``0.9``.
        repetition_penalty (float, optional): Penalty applied to recently
          emitted tokens, ``None`` disables it. Default: ``1.05``.
        repetition_context_size (int): Number of trailing tokens the penalty
          looks at. Default: ``20``.
    """

    max_tokens: int = 256
    temperature: float = 0.7
    top_p: float = 0.9
    repetition_penalty: Optional[float] = 1.05
    repetition_context_size: int = 20

    def __post_init__(self):
        if self.max_tokens < 0:
            raise ValueError(f"max_tokens must be non-negative, got {self.max_tokens}")
        if self.temperature < 0:
            raise ValueError(
                f"temperature must be non-negative, got {self.temperature}"
            )
        if not 0.0 <= self.top_p <= 1.0:
            raise ValueError(f"top_p must be in [0, 1], got {self.top_p}")
        if self.repetition_penalty is not None and self.repetition_penalty <= 0:
            raise ValueError(
                f"repetition_penalty must be positive, got {self.repetition_penalty}"
            )
        if self.repetition_context_size < 0:
            raise ValueError(
                "repetition_context_size must be non-negative, "
                f"got {self.repetition_context_size}"
            )


def apply_repetition_penalty(
    logits: mx.array, tokens: Sequence[int], penalty: float
) -> mx.array:
    """
    Penalize the logits of previously seen tokens.

    Negative logits are multiplied by ``penalty`` and non-negative logits are
    divided by it, so a penalty above 1 always makes a repeated token less
    likely. Each distinct token is penalized once regardless of how often it
    occurs in ``tokens``.

    Args:
        logits: The logits, shape ``[vocab]``.
        tokens: The context tokens to penalize.
        penalty (float): The penalty factor.

    Returns:
        A new logits array, the input is left untouched.
    """
    if len(tokens) == 0 or penalty == 1.0:
        return logits

    seen = mx.zeros(logits.shape[-1], dtype=mx.bool_)
    seen[mx.array(list(tokens))] = True
    penalized = mx.where(logits < 0, logits * penalty, logits / penalty)
    return mx.where(seen, penalized, logits)


def argmax_sample(logits: mx.array) -> int:
    return mx.argmax(logits, axis=-1).item()


def top_p_sample(logits: mx.array, temperature: float, top_p: float) -> int:
    """
    Apply top-p (nucleus) sampling to logits.

    Args:
        logits: The logits from the model's output, shape ``[vocab]``.
        temperature: Temperature parameter for softmax distribution reshaping.
        top_p: The cumulative probability threshold for top-p filtering.

    Returns:
        The sampled token id in the original vocabulary order.
    """
    if logits.dtype == mx.bfloat16:
        logits = logits.astype(mx.float32)

    probs = mx.softmax(logits / temperature, axis=-1)

    # Ascending order: the kept nucleus is the tail of the cumulative sum
    sorted_indices = mx.argsort(probs, axis=-1)
    sorted_probs = mx.take(probs, sorted_indices, axis=-1)
    cumulative_probs = mx.cumsum(sorted_probs, axis=-1)

    top_probs = mx.where(
        cumulative_probs > 1 - top_p,
        sorted_probs,
        mx.zeros_like(sorted_probs),
    )

    sorted_token = mx.random.categorical(mx.log(top_probs + 1e-10))
    return sorted_indices[sorted_token].item()


def categorical_sample(logits: mx.array, temperature: float) -> int:
    return mx.random.categorical(logits * (1 / temperature)).item()


def sample_token(
    logits: mx.array,
    config: GenerationConfig,
    previous_tokens: Optional[List[int]] = None,
) -> int:
    """
    Pick the next token id from a single row of logits.

    The repetition penalty is applied first over the last
    ``config.repetition_context_size`` tokens of ``previous_tokens``. Then
    exactly one of greedy, nucleus or plain categorical sampling is used.
    """
    context_size = config.repetition_context_size
    if config.repetition_penalty is not None and previous_tokens and context_size:
        logits = apply_repetition_penalty(
            logits, previous_tokens[-context_size:], config.repetition_penalty
        )

    if config.temperature == 0:
        return argmax_sample(logits)
    elif 0 < config.top_p < 1:
        return top_p_sample(logits, config.temperature, config.top_p)
    else:
        return categorical_sample(logits, config.temperature)


def make_sampler(config: GenerationConfig) -> Callable[[mx.array, List[int]], int]:
    """
    Bind a :class:`GenerationConfig` into a ``sampler(logits, tokens)``
    callable.
    """

    def sampler(logits: mx.array, previous_tokens: List[int]) -> int:
        return sample_token(logits, config, previous_tokens)

    return sampler
