"""Tests for the OpenAI-compatible, Anthropic and embedding clients."""
import unittest
from unittest.mock import patch, MagicMock

import httpx

from consilium.errors import ProviderError
from consilium.models.anthropic import AnthropicClient
from consilium.models.base import PromptBundle, chat_history, normalize_base_url, sort_models
from consilium.models.embeddings import EmbeddingClient, embedding_roots
from consilium.models.openai_compat import (
    DASHSCOPE_COMPAT_ROOT,
    MODELSCOPE_INFERENCE_ROOT,
    OpenAICompatClient,
    modelscope_roots,
)

PROMPT = PromptBundle(system="sys", user="case")


def _response(status_code=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload if payload is not None else {}
    response.text = text
    return response


def _mock_client(mock_client_cls, *responses, side_effect=None):
    mock_client = MagicMock()
    mock_client.__enter__ = MagicMock(return_value=mock_client)
    mock_client.__exit__ = MagicMock(return_value=False)
    if side_effect is not None:
        mock_client.post.side_effect = side_effect
        mock_client.get.side_effect = side_effect
    else:
        mock_client.post.side_effect = list(responses)
        mock_client.get.side_effect = list(responses)
    mock_client_cls.return_value = mock_client
    return mock_client


class HelperTests(unittest.TestCase):
    def test_normalize_base_url(self):
        self.assertEqual(normalize_base_url("https://x.test/"), "https://x.test")
        self.assertEqual(normalize_base_url("", "https://fallback"), "https://fallback")

    def test_chat_history_keeps_dialogue_roles(self):
        history = [{"role": "system", "content": "x"}, {"role": "user", "content": "hi"}]
        self.assertEqual(chat_history(history), [{"role": "user", "content": "hi"}])

    def test_sort_models_drops_unnamed(self):
        self.assertEqual(sort_models([{"id": "b"}, {"id": None}, {"id": "a"}]), [{"id": "a"}, {"id": "b"}])


class ModelscopeRoutingTests(unittest.TestCase):
    def test_chat_routing_by_key_prefix(self):
        self.assertEqual(modelscope_roots("ms-abc"), [MODELSCOPE_INFERENCE_ROOT])
        self.assertEqual(modelscope_roots("sk-abc"), [DASHSCOPE_COMPAT_ROOT])
        self.assertEqual(modelscope_roots("other"), [MODELSCOPE_INFERENCE_ROOT, DASHSCOPE_COMPAT_ROOT])

    def test_configured_base_url_is_exclusive_for_chat(self):
        self.assertEqual(modelscope_roots("ms-abc", "https://custom.test/v1/"), ["https://custom.test/v1"])

    def test_listing_tries_every_host(self):
        roots = modelscope_roots("sk-abc", "https://custom.test", listing=True)
        self.assertEqual(roots, ["https://custom.test", DASHSCOPE_COMPAT_ROOT, MODELSCOPE_INFERENCE_ROOT])

    def test_embedding_routing(self):
        self.assertEqual(embedding_roots("sk-1"), [DASHSCOPE_COMPAT_ROOT])
        self.assertEqual(embedding_roots("ms-1"), [MODELSCOPE_INFERENCE_ROOT])
        self.assertEqual(embedding_roots("ms-1", "https://e.test/"), ["https://e.test"])


class OpenAICompatClientTests(unittest.TestCase):
    @patch("consilium.models.openai_compat.httpx.Client")
    def test_chat_success(self, mock_client_cls):
        mock_client = _mock_client(
            mock_client_cls, _response(payload={"choices": [{"message": {"content": " Diagnosis: GERD "}}]})
        )
        client = OpenAICompatClient.for_provider("openai", "sk-test")
        result = client.chat("gpt-4o-mini", PROMPT, [{"role": "assistant", "content": "earlier"}])

        self.assertTrue(result.ok)
        self.assertEqual(result.text, "Diagnosis: GERD")
        args, kwargs = mock_client.post.call_args
        self.assertEqual(args[0], "https://api.openai.com/v1/chat/completions")
        roles = [m["role"] for m in kwargs["json"]["messages"]]
        self.assertEqual(roles, ["system", "assistant", "user"])
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer sk-test")

    @patch("consilium.models.openai_compat.httpx.Client")
    def test_chat_tries_next_endpoint(self, mock_client_cls):
        mock_client = _mock_client(
            mock_client_cls,
            _response(401, {"error": "bad key"}),
            _response(payload={"choices": [{"message": {"content": "ok"}}]}),
        )
        client = OpenAICompatClient.for_provider("modelscope", "plain-key")
        result = client.chat("qwen", PROMPT, [])

        self.assertTrue(result.ok)
        self.assertEqual(mock_client.post.call_count, 2)

    @patch("consilium.models.openai_compat.httpx.Client")
    def test_chat_joins_endpoint_errors(self, mock_client_cls):
        _mock_client(mock_client_cls, _response(401, {"error": "a"}), _response(500, {"error": "b"}))
        client = OpenAICompatClient.for_provider("modelscope", "plain-key")
        result = client.chat("qwen", PROMPT, [])

        self.assertFalse(result.ok)
        self.assertEqual(result.status, 500)
        self.assertEqual(result.error.count("endpoint"), 2)
        self.assertIn(" | ", result.error)

    @patch("consilium.models.openai_compat.httpx.Client")
    def test_chat_timeout(self, mock_client_cls):
        _mock_client(mock_client_cls, side_effect=httpx.TimeoutException("slow"))
        result = OpenAICompatClient.for_provider("siliconflow", "k").chat("m", PROMPT, [])
        self.assertFalse(result.ok)
        self.assertTrue(result.timed_out)

    @patch("consilium.models.openai_compat.httpx.Client")
    def test_list_models(self, mock_client_cls):
        _mock_client(mock_client_cls, _response(payload={"data": [{"id": "b", "owned_by": "x"}, {"id": "a"}]}))
        models = OpenAICompatClient.for_provider("openai", "k").list_models()
        self.assertEqual([m["id"] for m in models], ["a", "b"])

    @patch("consilium.models.openai_compat.httpx.Client")
    def test_list_models_raises_when_all_fail(self, mock_client_cls):
        _mock_client(mock_client_cls, _response(401, {"error": "no"}))
        with self.assertRaises(ProviderError):
            OpenAICompatClient.for_provider("openai", "k").list_models()


class AnthropicClientTests(unittest.TestCase):
    @patch("consilium.models.anthropic.httpx.Client")
    def test_chat_success(self, mock_client_cls):
        mock_client = _mock_client(mock_client_cls, _response(payload={"content": [{"type": "text", "text": "Reply"}]}))
        result = AnthropicClient("key").chat("claude-sonnet-4-5", PROMPT, [])

        self.assertTrue(result.ok)
        self.assertEqual(result.text, "Reply")
        args, kwargs = mock_client.post.call_args
        self.assertEqual(args[0], "https://api.anthropic.com/v1/messages")
        self.assertEqual(kwargs["json"]["system"], "sys")
        self.assertEqual(kwargs["headers"]["anthropic-version"], "2023-06-01")

    @patch("consilium.models.anthropic.httpx.Client")
    def test_chat_error(self, mock_client_cls):
        _mock_client(mock_client_cls, _response(529, {"error": {"type": "overloaded_error"}}))
        result = AnthropicClient("key").chat("m", PROMPT, [])
        self.assertFalse(result.ok)
        self.assertEqual(result.status, 529)


class EmbeddingClientTests(unittest.TestCase):
    @patch("consilium.models.embeddings.httpx.Client")
    def test_embed(self, mock_client_cls):
        mock_client = _mock_client(mock_client_cls, _response(payload={"data": [{"embedding": [0.1, "0.2", None]}]}))
        result = EmbeddingClient("sk-1").embed("liver")

        self.assertTrue(result.ok)
        self.assertEqual(result.vector, [0.1, 0.2, 0.0])
        args, kwargs = mock_client.post.call_args
        self.assertEqual(args[0], f"{DASHSCOPE_COMPAT_ROOT}/embeddings")
        self.assertEqual(kwargs["json"]["encoding_format"], "float")

    @patch("consilium.models.embeddings.httpx.Client")
    def test_embed_error(self, mock_client_cls):
        _mock_client(mock_client_cls, _response(400, {"error": "bad"}))
        result = EmbeddingClient("ms-1").embed("liver")
        self.assertFalse(result.ok)
        self.assertEqual(result.status, 400)


if __name__ == "__main__":
    unittest.main()
