"""Unit tests for GenerationClient with mocked LiteLLM calls."""

from unittest.mock import MagicMock, patch

import pytest

from longform.core.config import Settings
from longform.exceptions import CircuitOpenError, GenerationError
from longform.services.circuit_breaker import CircuitState, get_breaker
from longform.services.generation import GenerationClient


def _response(content):
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    return response


class TestGenerationClient:
    @patch("litellm.completion")
    def test_returns_first_choice_text(self, mock_completion):
        mock_completion.return_value = _response("Hello")
        client = GenerationClient(Settings())
        assert client("openai", "Say hello") == "Hello"

    @patch("litellm.completion")
    def test_resolves_provider_to_model(self, mock_completion):
        mock_completion.return_value = _response("ok")
        settings = Settings(provider_models={"acme": "openai/acme-large"}, llm_temperature=0.2)
        GenerationClient(settings)("acme", "instruction")

        kwargs = mock_completion.call_args.kwargs
        assert kwargs["model"] == "openai/acme-large"
        assert kwargs["messages"] == [{"role": "user", "content": "instruction"}]
        assert kwargs["temperature"] == 0.2
        assert "api_key" not in kwargs

    @patch("litellm.completion")
    def test_unknown_provider_passed_through(self, mock_completion):
        mock_completion.return_value = _response("ok")
        GenerationClient(Settings())("ollama/llama3", "instruction")
        assert mock_completion.call_args.kwargs["model"] == "ollama/llama3"

    @patch("litellm.completion")
    def test_api_key_and_base_forwarded(self, mock_completion):
        mock_completion.return_value = _response("ok")
        settings = Settings(llm_api_key="sk-test", llm_api_base="http://localhost:4000")
        GenerationClient(settings)("openai", "instruction")

        kwargs = mock_completion.call_args.kwargs
        assert kwargs["api_key"] == "sk-test"
        assert kwargs["api_base"] == "http://localhost:4000"

    @patch("litellm.completion")
    def test_none_content_becomes_empty_string(self, mock_completion):
        mock_completion.return_value = _response(None)
        assert GenerationClient(Settings())("openai", "x") == ""

    @patch("litellm.completion")
    def test_provider_error_wrapped_verbatim(self, mock_completion):
        mock_completion.side_effect = RuntimeError("rate limited")
        with pytest.raises(GenerationError) as exc_info:
            GenerationClient(Settings())("openai", "x")
        assert exc_info.value.message == "rate limited"
        assert exc_info.value.provider_id == "openai"

    @patch("litellm.completion")
    def test_repeated_failures_open_circuit(self, mock_completion):
        mock_completion.side_effect = RuntimeError("down")
        client = GenerationClient(Settings())
        for _ in range(3):
            with pytest.raises(GenerationError):
                client("anthropic", "x")
        assert get_breaker("anthropic").state == CircuitState.OPEN

        with pytest.raises(CircuitOpenError):
            client("anthropic", "x")
        assert mock_completion.call_count == 3
