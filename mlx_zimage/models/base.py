# Copyright © 2023-2024 Apple Inc.

import inspect
from dataclasses import dataclass
from typing import Any, Optional, Union

import mlx.core as mx


@dataclass
class BaseModelArgs:
    @classmethod
    def from_dict(cls, params):
        return cls(
            **{
                k: v
                for k, v in params.items()
                if k in inspect.signature(cls).parameters
            }
        )


def create_causal_mask(N: int, offset: int = 0) -> mx.array:
    """
    Boolean causal mask for ``N`` queries appended after ``offset`` cached
    positions.

    Returns:
        A ``[N, offset + N]`` array where entry ``(i, j)`` is ``True`` when
        query ``offset + i`` may attend to key ``j``.
    """
    rinds = mx.arange(offset + N)
    linds = mx.arange(offset, offset + N) if offset else rinds
    linds = linds[:, None]
    rinds = rinds[None]
    return linds >= rinds


def create_attention_mask(
    h: mx.array, cache: Optional[Any] = None
) -> Union[None, str, mx.array]:
    N = h.shape[1]
    if cache is not None:
        return cache.make_mask(N)
    if N == 1:
        return None
    return "causal"
