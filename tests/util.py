# ABOUTME: Provides scripted model fakes for decode and denoising tests.
# ABOUTME: Fakes honour the forward contracts and drive real KV caches.

from typing import List, Sequence

import mlx.core as mx


class ScriptedLM:
    """Causal LM fake whose last-position logits favour a scripted token.

    Every call writes one key/value row per input position into each layer
    cache, so cache offsets track the number of positions seen.
    """

    def __init__(self, script: Sequence[int], vocab_size: int = 16, num_layers: int = 2):
        self.script = list(script)
        self.vocab_size = vocab_size
        self.layers = [None] * num_layers
        self.calls: List[tuple] = []
        self.caches = None

    def __call__(self, inputs, cache=None):
        self.calls.append(tuple(inputs.shape))
        self.caches = cache
        B, L = inputs.shape
        for c in cache:
            kv = mx.ones((B, 1, L, 2))
            c.update_and_fetch(kv, kv)

        index = len(self.calls) - 1
        token = self.script[min(index, len(self.script) - 1)]
        last = mx.zeros((self.vocab_size,))
        last[token] = 10.0
        logits = mx.zeros((B, L, self.vocab_size))
        logits[:, -1, :] = last
        return logits


class FakeTokenizer:
    """Tokenizer boundary fake mapping token ids to text pieces."""

    def __init__(self, pieces, eos_token_id=None, prompt_tokens=(1, 2, 3)):
        self.pieces = pieces
        self.eos_token_id = eos_token_id
        self.max_length = 512
        self.prompt_tokens = list(prompt_tokens)
        self.messages = None

    def encode_chat_for_generation(self, messages, max_length=None):
        self.messages = messages
        return self.prompt_tokens

    def decode(self, tokens):
        return "".join(self.pieces[t] for t in tokens)

    def encode_chat(self, prompts, max_length=None):
        L = 4
        return mx.zeros((len(prompts), L), dtype=mx.int32), mx.ones((len(prompts), L))
