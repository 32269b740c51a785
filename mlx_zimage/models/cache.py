# Copyright © 2023-2024 Apple Inc.

from typing import List, Optional, Tuple, Union

import mlx.core as mx
import mlx.nn as nn

from .base import create_causal_mask


def make_prompt_cache(model: nn.Module, step: int = 256) -> List["_BaseCache"]:
    """
    Construct the per-layer caches for one generation request.

    Defer the cache construction to the model if it has a ``make_cache``
    method, otherwise make one :class:`KVCache` per entry of ``model.layers``.

    Args:
        model (nn.Module): The language model.
        step (int): The growth granularity of each cache along the time axis.
          Default: ``256``.

    Returns:
        A list of independent caches, one per layer.
    """
    if hasattr(model, "make_cache"):
        return model.make_cache()

    num_layers = len(model.layers)
    return [KVCache(step=step) for _ in range(num_layers)]


class _BaseCache:
    """Interface shared by all attention caches.

    A cache is owned by exactly one attention layer for the lifetime of a
    single request. The decode loop only relies on ``update_and_fetch``,
    ``make_mask`` and ``reset`` so alternative eviction policies can be
    swapped in without touching it.
    """

    offset: int = 0

    def update_and_fetch(
        self, keys: mx.array, values: mx.array
    ) -> Tuple[mx.array, mx.array]:
        raise NotImplementedError

    def make_mask(
        self, N: int, return_array: bool = False
    ) -> Union[None, str, mx.array]:
        raise NotImplementedError

    def reset(self):
        raise NotImplementedError

    @property
    def state(self):
        return []

    def empty(self) -> bool:
        return self.offset == 0


class KVCache(_BaseCache):
    def __init__(self, step: int = 256):
        if step <= 0:
            raise ValueError(f"step must be positive, got {step}")
        self.keys: Optional[mx.array] = None
        self.values: Optional[mx.array] = None
        self.offset = 0
        self.step = step

    @property
    def capacity(self) -> int:
        return 0 if self.keys is None else self.keys.shape[2]

    def update_and_fetch(self, keys, values):
        prev = self.offset
        if self.keys is None or (prev + keys.shape[2]) > self.keys.shape[2]:
            B, n_kv_heads, _, k_head_dim = keys.shape
            v_head_dim = values.shape[3]
            n_steps = (self.step + keys.shape[2] - 1) // self.step
            k_shape = (B, n_kv_heads, n_steps * self.step, k_head_dim)
            v_shape = (B, n_kv_heads, n_steps * self.step, v_head_dim)
            new_k = mx.zeros(k_shape, keys.dtype)
            new_v = mx.zeros(v_shape, values.dtype)
            if self.keys is not None:
                # Drop the zero filler so it never lands inside the valid range
                if prev % self.step != 0:
                    self.keys = self.keys[..., :prev, :]
                    self.values = self.values[..., :prev, :]
                self.keys = mx.concatenate([self.keys, new_k], axis=2)
                self.values = mx.concatenate([self.values, new_v], axis=2)
            else:
                self.keys, self.values = new_k, new_v

        self.offset += keys.shape[2]
        self.keys[..., prev : self.offset, :] = keys
        self.values[..., prev : self.offset, :] = values
        return self.keys[..., : self.offset, :], self.values[..., : self.offset, :]

    def make_mask(self, N, return_array=False):
        # A single query already sits after every cached position
        if N == 1:
            return None
        if return_array:
            return create_causal_mask(N, self.offset)
        return "causal"

    def reset(self):
        self.keys = None
        self.values = None
        self.offset = 0

    @property
    def state(self):
        if self.keys is None:
            return []
        return self.keys[..., : self.offset, :], self.values[..., : self.offset, :]
