import unittest

import numpy as np

from mlx_zimage.tokenizer_utils import TokenizerWrapper


class FakeHFTokenizer:
    eos_token_id = 151645
    padding_side = "right"

    def __init__(self):
        self.template_calls = []
        self.decode_kwargs = None

    def apply_chat_template(self, messages, tokenize=False, **kwargs):
        self.template_calls.append(kwargs)
        return "|".join(m["content"] for m in messages)

    def encode(self, text, add_special_tokens=True):
        return [len(part) for part in text.split("|")] + [0, 0, 0]

    def __call__(self, texts, padding, max_length, truncation, return_tensors):
        ids = np.zeros((len(texts), max_length), dtype=np.int64)
        mask = np.zeros((len(texts), max_length), dtype=np.int64)
        for i, text in enumerate(texts):
            n = min(len(text), max_length)
            ids[i, :n] = 1
            mask[i, :n] = 1
        return {"input_ids": ids, "attention_mask": mask}

    def decode(self, tokens, **kwargs):
        self.decode_kwargs = kwargs
        return " ".join(str(t) for t in tokens)


class WordTokenizer:
    """Whitespace tokenizer whose template appends an assistant header."""

    def __init__(self):
        self.vocab = {}

    def apply_chat_template(self, messages, tokenize=False, **kwargs):
        text = " ".join(m["content"] for m in messages)
        if kwargs.get("add_generation_prompt"):
            text += " <assistant>"
        return text

    def encode(self, text, add_special_tokens=True):
        return [self.vocab.setdefault(w, len(self.vocab)) for w in text.split()]


class TestTokenizerWrapper(unittest.TestCase):

    def setUp(self):
        self.hf = FakeHFTokenizer()
        self.tokenizer = TokenizerWrapper(self.hf, max_length=6)

    def test_encode_chat_for_generation(self):
        messages = [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "hello"},
        ]
        tokens = self.tokenizer.encode_chat_for_generation(messages)
        self.assertEqual(tokens, [3, 5, 0, 0, 0])
        self.assertTrue(self.hf.template_calls[0]["add_generation_prompt"])

        tokens = self.tokenizer.encode_chat_for_generation(messages, max_length=2)
        self.assertEqual(tokens, [3, 5])

    def test_truncation_keeps_assistant_header(self):
        hf = WordTokenizer()
        tokenizer = TokenizerWrapper(hf)
        messages = [{"role": "user", "content": "a b c d e f"}]

        tokens = tokenizer.encode_chat_for_generation(messages, max_length=10)
        self.assertEqual(len(tokens), 7)

        with self.assertLogs("mlx_zimage.tokenizer_utils", level="WARNING"):
            tokens = tokenizer.encode_chat_for_generation(messages, max_length=4)
        vocab = hf.vocab
        self.assertEqual(tokens, [vocab["a"], vocab["b"], vocab["c"], vocab["<assistant>"]])

    def test_encode_chat(self):
        input_ids, attention_mask = self.tokenizer.encode_chat(["abc", "abcdefgh"])
        self.assertEqual(input_ids.shape, (2, 6))
        self.assertEqual(attention_mask.tolist()[0], [1, 1, 1, 0, 0, 0])
        self.assertEqual(attention_mask.tolist()[1], [1] * 6)

    def test_decode_and_forwarding(self):
        self.assertEqual(self.tokenizer.decode([1, 2]), "1 2")
        self.assertTrue(self.hf.decode_kwargs["skip_special_tokens"])
        self.assertEqual(self.tokenizer.eos_token_id, 151645)
        self.assertEqual(self.tokenizer.max_length, 6)
        self.assertEqual(self.tokenizer.padding_side, "right")


if __name__ == "__main__":
    unittest.main()
