# Copyright © 2024 Apple Inc.

import unittest

import mlx.core as mx

from mlx_zimage.generate import (
    PE_SYSTEM_PROMPT,
    PromptEnhanceConfig,
    enhance_prompt,
    extract_answer,
    generate,
)
from tests.util import FakeTokenizer, ScriptedLM

GREEDY = dict(temperature=0.0, repetition_penalty=None)


class TestGenerate(unittest.TestCase):

    def test_immediate_eos_returns_nothing(self):
        model = ScriptedLM(script=[9])
        config = PromptEnhanceConfig(eos_token_id=9, stop_token_ids={15}, **GREEDY)
        tokens = generate(model, mx.array([[1, 2, 3]]), config)
        self.assertEqual(tokens, [])
        # Only the prefill ran
        self.assertEqual(model.calls, [(1, 3)])

    def test_stop_token_is_not_emitted(self):
        model = ScriptedLM(script=[4, 5, 15, 6])
        config = PromptEnhanceConfig(eos_token_id=9, stop_token_ids={15}, **GREEDY)
        tokens = generate(model, mx.array([[1, 2]]), config)
        self.assertEqual(tokens, [4, 5])

    def test_max_new_tokens_is_a_hard_bound(self):
        model = ScriptedLM(script=[7])
        config = PromptEnhanceConfig(max_new_tokens=5, eos_token_id=9, **GREEDY)
        tokens = generate(model, mx.array([[1, 2, 3]]), config)
        self.assertEqual(tokens, [7] * 5)

    def test_zero_max_new_tokens(self):
        model = ScriptedLM(script=[7])
        config = PromptEnhanceConfig(max_new_tokens=0, **GREEDY)
        self.assertEqual(generate(model, mx.array([[1]]), config), [])

    def test_prefill_then_single_token_decode(self):
        model = ScriptedLM(script=[4, 5, 6, 9], num_layers=3)
        config = PromptEnhanceConfig(eos_token_id=9, **GREEDY)
        tokens = generate(model, mx.array([[1, 2, 3, 4]]), config)
        self.assertEqual(tokens, [4, 5, 6])
        self.assertEqual(model.calls, [(1, 4), (1, 1), (1, 1), (1, 1)])

        # One cache per layer, all advanced over prompt and decoded tokens
        self.assertEqual(len(model.caches), 3)
        for c in model.caches:
            self.assertEqual(c.offset, 7)

    def test_fresh_caches_per_request(self):
        model = ScriptedLM(script=[4, 9])
        config = PromptEnhanceConfig(eos_token_id=9, **GREEDY)
        generate(model, mx.array([[1, 2]]), config)
        first = model.caches
        model.calls.clear()
        generate(model, mx.array([[1, 2]]), config)
        self.assertIsNot(first, model.caches)
        self.assertEqual(model.caches[0].offset, 3)

    def test_repetition_penalty_sees_prompt(self):
        class Model(ScriptedLM):
            def __call__(self, inputs, cache=None):
                super().__call__(inputs, cache)
                return mx.array([[[2.0, 1.9, 0.0, 0.0]]])

        config = PromptEnhanceConfig(
            max_new_tokens=1,
            temperature=0.0,
            repetition_penalty=2.0,
            eos_token_id=3,
            stop_token_ids=set(),
        )
        tokens = generate(Model(script=[0], vocab_size=4), mx.array([[0]]), config)
        self.assertEqual(tokens, [1])


class TestPromptEnhanceConfig(unittest.TestCase):

    def test_defaults(self):
        config = PromptEnhanceConfig()
        self.assertEqual(config.max_new_tokens, 512)
        self.assertEqual(config.eos_token_id, 151645)
        self.assertEqual(config.stop_token_ids, frozenset({151645, 151643}))
        self.assertTrue(config.is_stop_token(151643))
        self.assertFalse(config.is_stop_token(0))

    def test_invalid_sampling_rejected_at_construction(self):
        with self.assertRaises(ValueError):
            PromptEnhanceConfig(top_p=2.0)
        with self.assertRaises(ValueError):
            PromptEnhanceConfig(max_new_tokens=-1)


class TestEnhancePrompt(unittest.TestCase):

    PIECES = {
        0: "<think>",
        1: "plan",
        2: "</think>",
        3: "  a red fox in snow ",
        8: "<eos>",
        9: "<im_end>",
    }

    def _enhance(self, script, tokenizer_eos=None, config=None):
        tokenizer = FakeTokenizer(self.PIECES, eos_token_id=tokenizer_eos)
        model = ScriptedLM(script=script)
        config = config or PromptEnhanceConfig(eos_token_id=9, **GREEDY)
        return enhance_prompt(model, "fox", tokenizer, config), tokenizer

    def test_answer_after_think_block(self):
        text, tokenizer = self._enhance([0, 1, 2, 3, 9])
        self.assertEqual(text, "a red fox in snow")
        system, user = tokenizer.messages
        self.assertEqual(system, {"role": "system", "content": PE_SYSTEM_PROMPT})
        self.assertEqual(user["role"], "user")
        self.assertTrue(user["content"].endswith("fox"))

    def test_unclosed_think_is_incomplete(self):
        config = PromptEnhanceConfig(max_new_tokens=3, eos_token_id=9, **GREEDY)
        text, _ = self._enhance([0, 1, 1, 1], config=config)
        self.assertEqual(text, "")

    def test_tokenizer_eos_overrides_config(self):
        text, _ = self._enhance([3, 8, 3, 9], tokenizer_eos=8)
        self.assertEqual(text, "  a red fox in snow ")


class TestExtractAnswer(unittest.TestCase):

    def test_extract_answer(self):
        self.assertEqual(extract_answer("<think>x</think>\n answer "), "answer")
        self.assertEqual(extract_answer("<think>never closed"), "")
        self.assertEqual(extract_answer("plain text"), "plain text")
        self.assertEqual(extract_answer("a</think>b</think>c"), "b</think>c")


if __name__ == "__main__":
    unittest.main()
