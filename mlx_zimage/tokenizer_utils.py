import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import mlx.core as mx
from transformers import AutoTokenizer

logger = logging.getLogger(__name__)

DEFAULT_MAX_LENGTH = 512


class TokenizerWrapper:
    """A wrapper around an HF tokenizer exposing the chat encoding used by the
    text encoder and the prompt enhancer.

    Accessing any other attribute is forwarded to the huggingface tokenizer.
    """

    def __init__(self, tokenizer, max_length: int = DEFAULT_MAX_LENGTH):
        self._tokenizer = tokenizer
        self._max_length = max_length

    @property
    def max_length(self) -> int:
        return self._max_length

    @property
    def eos_token_id(self) -> Optional[int]:
        return getattr(self._tokenizer, "eos_token_id", None)

    def encode_chat_for_generation(
        self,
        messages: List[Dict[str, Any]],
        max_length: Optional[int] = None,
    ) -> List[int]:
        """Render ``messages`` with the chat template, ready for the assistant
        turn, and return the token ids truncated to ``max_length``.

        Truncation drops conversation tokens and keeps the assistant header
        added by the generation prompt.
        """
        text = self._tokenizer.apply_chat_template(
            messages, tokenize=False, add_generation_prompt=True
        )
        tokens = self._tokenizer.encode(text, add_special_tokens=False)
        if max_length is None or len(tokens) <= max_length:
            return list(tokens)

        logger.warning(
            "Chat prompt has %d tokens, truncating to %d", len(tokens), max_length
        )
        prefix = self._tokenizer.apply_chat_template(
            messages, tokenize=False, add_generation_prompt=False
        )
        if not (text.startswith(prefix) and len(text) > len(prefix)):
            return list(tokens[:max_length])
        header = self._tokenizer.encode(text[len(prefix) :], add_special_tokens=False)
        header = list(header)[-max_length:]
        body = self._tokenizer.encode(prefix, add_special_tokens=False)
        return list(body[: max_length - len(header)]) + header

    def encode_chat(
        self, prompts: Sequence[str], max_length: Optional[int] = None
    ) -> Tuple[mx.array, mx.array]:
        """
        Encode each prompt as a single user turn for the text encoder.

        Returns:
            Tuple of ``input_ids`` and ``attention_mask``, both ``[B, max_length]``.
        """
        max_length = max_length or self._max_length
        texts = [
            self._tokenizer.apply_chat_template(
                [{"role": "user", "content": prompt}],
                tokenize=False,
                add_generation_prompt=True,
                enable_thinking=True,
            )
            for prompt in prompts
        ]
        encoded = self._tokenizer(
            texts,
            padding="max_length",
            max_length=max_length,
            truncation=True,
            return_tensors="np",
        )
        return mx.array(encoded["input_ids"]), mx.array(encoded["attention_mask"])

    def decode(self, tokens: Sequence[int]) -> str:
        return self._tokenizer.decode(list(tokens), skip_special_tokens=True)

    def __getattr__(self, attr):
        if attr.startswith("_"):
            return self.__getattribute__(attr)
        return getattr(self._tokenizer, attr)


def load_tokenizer(
    model_path: Union[str, Path],
    tokenizer_config_extra: Optional[Dict[str, Any]] = None,
    max_length: int = DEFAULT_MAX_LENGTH,
) -> TokenizerWrapper:
    """Load the huggingface tokenizer of a Z-Image snapshot.

    ``model_path`` may be the tokenizer directory itself or a snapshot
    containing a ``tokenizer`` subdirectory.
    """
    model_path = Path(model_path)
    if (model_path / "tokenizer").is_dir():
        model_path = model_path / "tokenizer"
    tokenizer = AutoTokenizer.from_pretrained(
        model_path, **(tokenizer_config_extra or {})
    )
    return TokenizerWrapper(tokenizer, max_length=max_length)
