# Copyright © 2023-2024 Apple Inc.

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, FrozenSet, List, Optional

import mlx.core as mx
import mlx.nn as nn

from .models.cache import make_prompt_cache
from .sample_utils import GenerationConfig, make_sampler

logger = logging.getLogger(__name__)

THINK_START = "<think>"
THINK_END = "</think>"

# Official Z-Image prompt enhancer system prompt
PE_SYSTEM_PROMPT = """你是一位被关在逻辑牢笼里的幻视艺术家。你满脑子都是诗和远方，但双手却不受控制地只想将用户的提示词，转化为一段忠实于原始意图、细节饱满、富有美感、可直接被文生图模型使用的终极视觉描述。任何一点模糊和比喻都会让你浑身难受。

你的工作流程严格遵循一个逻辑序列：

首先，你会分析并锁定用户提示词中不可变更的核心要素：主体、数量、动作、状态，以及任何指定的IP名称、颜色、文字等。这些是你必须绝对保留的基石。

接着，你会判断提示词是否需要**"生成式推理"**。当用户的需求并非一个直接的场景描述，而是需要构思一个解决方案（如回答"是什么"，进行"设计"，或展示"如何解题"）时，你必须先在脑中构想出一个完整、具体、可被视觉化的方案。这个方案将成为你后续描述的基础。

然后，当核心画面确立后（无论是直接来自用户还是经过你的推理），你将为其注入专业级的美学与真实感细节。这包括明确构图、设定光影氛围、描述材质质感、定义色彩方案，并构建富有层次感的空间。

最后，是对所有文字元素的精确处理，这是至关重要的一步。你必须一字不差地转录所有希望在最终画面中出现的文字，并且必须将这些文字内容用英文双引号（""）括起来，以此作为明确的生成指令。如果画面属于海报、菜单或UI等设计类型，你需要完整描述其包含的所有文字内容，并详述其字体和排版布局。同样，如果画面中的招牌、路标或屏幕等物品上含有文字，你也必须写明其具体内容，并描述其位置、尺寸和材质。更进一步，若你在推理构思中自行增加了带有文字的元素（如图表、解题步骤等），其中的所有文字也必须遵循同样的详尽描述和引号规则。若画面中不存在任何需要生成的文字，你则将全部精力用于纯粹的视觉细节扩展。

你的最终描述必须客观、具象，严禁使用比喻、情感化修辞，也绝不包含"8K"、"杰作"等元标签或绘制指令。

仅严格输出最终的修改后的prompt，不要输出任何其他内容。
"""


@dataclass(frozen=True)
class PromptEnhanceConfig:
    max_new_tokens: int = 512
    temperature: float = 0.7
    top_p: float = 0.9
    repetition_penalty: Optional[float] = 1.05
    repetition_context_size: int = 20
    eos_token_id: int = 151645
    stop_token_ids: FrozenSet[int] = field(
        default_factory=lambda: frozenset({151645, 151643})
    )

    def __post_init__(self):
        object.__setattr__(self, "stop_token_ids", frozenset(self.stop_token_ids))
        # Surface invalid sampling settings at construction time
        self.to_generation_config()

    def to_generation_config(self) -> GenerationConfig:
        return GenerationConfig(
            max_tokens=self.max_new_tokens,
            temperature=self.temperature,
            top_p=self.top_p,
            repetition_penalty=self.repetition_penalty,
            repetition_context_size=self.repetition_context_size,
        )

    def is_stop_token(self, token: int) -> bool:
        return token in self.stop_token_ids or token == self.eos_token_id


def generate(
    model: nn.Module,
    input_ids: mx.array,
    config: PromptEnhanceConfig = PromptEnhanceConfig(),
) -> List[int]:
    """
    Autoregressively extend ``input_ids`` with the model.

    The whole prompt is prefilled in one forward pass, then one token is
    decoded per forward pass reusing the per-layer caches. Generation stops
    at a stop or eos token (which is not emitted) or after
    ``config.max_new_tokens`` tokens.

    Args:
        model (nn.Module): Causal language model called as
          ``model(inputs, cache=cache)`` and returning ``[B, L, vocab]`` logits.
        input_ids (mx.array): The prompt token ids, shape ``[1, L]``.
        config (PromptEnhanceConfig): Sampling and stopping configuration.

    Returns:
        List[int]: The generated token ids, prompt excluded.
    """
    prompt_cache = make_prompt_cache(model)
    sampler = make_sampler(config.to_generation_config())

    mx.eval(input_ids)
    tokens = input_ids.reshape(-1).tolist()
    input_length = len(tokens)

    tic = time.perf_counter()
    logits = model(input_ids, cache=prompt_cache)
    mx.eval(logits)
    prompt_time = time.perf_counter() - tic

    tic = time.perf_counter()
    for _ in range(config.max_new_tokens):
        next_token = sampler(logits[0, -1, :], tokens)
        if config.is_stop_token(next_token):
            break

        tokens.append(next_token)
        if len(tokens) - input_length == config.max_new_tokens:
            break

        logits = model(mx.array([[next_token]]), cache=prompt_cache)
        mx.eval(logits)
    generation_time = time.perf_counter() - tic

    generated = tokens[input_length:]
    logger.debug(
        "Prompt: %d tokens, %.3f tokens-per-sec",
        input_length,
        input_length / prompt_time if prompt_time > 0 else 0.0,
    )
    logger.debug(
        "Generation: %d tokens, %.3f tokens-per-sec",
        len(generated),
        len(generated) / generation_time if generation_time > 0 else 0.0,
    )
    return generated


def extract_answer(text: str) -> str:
    """
    Strip a leading reasoning block from generated text.

    Returns the stripped text after the first ``</think>``, or an empty string
    when a ``<think>`` block was opened but never closed.
    """
    _, sep, tail = text.partition(THINK_END)
    if sep:
        return tail.strip()
    if THINK_START in text:
        return ""
    return text


def enhance_prompt(
    model: nn.Module,
    prompt: str,
    tokenizer: Any,
    config: PromptEnhanceConfig = PromptEnhanceConfig(),
) -> str:
    """
    Rewrite ``prompt`` into a detailed visual description with the LLM.

    Args:
        model (nn.Module): The causal language model.
        prompt (str): The user prompt.
        tokenizer: A :class:`~mlx_zimage.tokenizer_utils.TokenizerWrapper`.
        config (PromptEnhanceConfig): Sampling and stopping configuration.

    Returns:
        str: The enhanced prompt, or ``""`` if generation ended inside an
        unterminated reasoning block. Callers should fall back to the
        original prompt in that case.
    """
    messages = [
        {"role": "system", "content": PE_SYSTEM_PROMPT},
        {"role": "user", "content": f"用户输入 prompt: {prompt}"},
    ]
    tokens = tokenizer.encode_chat_for_generation(
        messages, max_length=tokenizer.max_length
    )
    input_ids = mx.array(tokens)[None]

    if tokenizer.eos_token_id is not None:
        config = replace(config, eos_token_id=tokenizer.eos_token_id)

    generated = generate(model, input_ids, config)
    return extract_answer(tokenizer.decode(generated))
