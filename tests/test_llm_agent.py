"""Unit tests for ChatAgent and FeedbackClassifier."""
import json
import pytest
from unittest.mock import Mock, patch
from openai import RateLimitError
from src.agents.llm_agent import ChatAgent, FeedbackClassifier
from src.config.settings import ConfigurationError
from conftest import make_item


def _chat_response(content):
    response = Mock()
    response.choices = [Mock(message=Mock(content=content))]
    return response


def _rate_limit_error():
    return RateLimitError("rate limited", response=Mock(status_code=429, headers={}), body=None)


class TestChatAgent:
    """Test ChatAgent class."""

    @patch('src.agents.llm_agent.OpenAI')
    def test_agent_initialization(self, mock_openai, mock_config):
        agent = ChatAgent(mock_config)

        assert agent.model == "gpt-4o-mini"
        mock_openai.assert_called_once_with(api_key="test-api-key")

    @patch('src.agents.llm_agent.OpenAI')
    def test_agent_uses_base_url(self, mock_openai, mock_config):
        mock_config.openai_base_url = "https://openrouter.ai/api/v1"

        ChatAgent(mock_config)

        mock_openai.assert_called_once_with(api_key="test-api-key", base_url="https://openrouter.ai/api/v1")

    def test_missing_api_key(self, mock_config):
        mock_config.openai_api_key = ""

        with pytest.raises(ConfigurationError):
            ChatAgent(mock_config)

    @patch('src.agents.llm_agent.OpenAI')
    def test_chat_single(self, mock_openai, mock_config):
        mock_client = mock_openai.return_value
        mock_client.chat.completions.create.return_value = _chat_response("Hello")

        agent = ChatAgent(mock_config)
        result = agent.chat_single("Say hello", max_tokens=50)

        assert result == "Hello"
        kwargs = mock_client.chat.completions.create.call_args.kwargs
        assert kwargs["messages"] == [{"role": "user", "content": "Say hello"}]
        assert kwargs["max_tokens"] == 50
        assert kwargs["temperature"] == 0.3

    @patch('src.agents.llm_agent.time.sleep')
    @patch('src.agents.llm_agent.OpenAI')
    def test_chat_retries_rate_limit(self, mock_openai, mock_sleep, mock_config):
        mock_client = mock_openai.return_value
        mock_client.chat.completions.create.side_effect = [
            _rate_limit_error(),
            _rate_limit_error(),
            _chat_response("ok"),
        ]

        agent = ChatAgent(mock_config)

        assert agent.chat_single("hi") == "ok"
        assert mock_client.chat.completions.create.call_count == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0]

    @patch('src.agents.llm_agent.time.sleep')
    @patch('src.agents.llm_agent.OpenAI')
    def test_chat_gives_up_after_max_retries(self, mock_openai, mock_sleep, mock_config):
        mock_openai.return_value.chat.completions.create.side_effect = _rate_limit_error()

        agent = ChatAgent(mock_config)

        with pytest.raises(RateLimitError):
            agent.chat_single("hi")
        assert mock_sleep.call_count == 4


class TestFeedbackClassifier:
    """Test FeedbackClassifier class."""

    @pytest.fixture
    def agent(self):
        return Mock(spec=ChatAgent)

    def test_build_prompt_truncates_content(self, mock_config, agent):
        classifier = FeedbackClassifier(mock_config, agent=agent)
        items = [make_item("a" * 600), make_item("short text", source="reddit")]

        prompt = classifier.build_prompt(items)

        assert "[0] Source: app_store" in prompt
        assert "a" * 500 + "..." in prompt
        assert "a" * 501 not in prompt
        assert "[1] Source: reddit" in prompt
        assert "JSON array of 2 objects" in prompt

    def test_classify_batch(self, mock_config, agent):
        agent.chat_single.return_value = json.dumps([
            {"feedback_type": "bug", "sentiment_score": -0.8, "technical_severity": 90,
             "keywords": ["login", "crash"], "summary": "Login crashes"},
            {"feedback_type": "praise", "sentiment_score": 0.9, "technical_severity": 5,
             "keywords": [], "summary": "Likes the app"},
        ])
        classifier = FeedbackClassifier(mock_config, agent=agent)

        results = classifier.classify_batch([make_item("a"), make_item("b")])

        assert [r.feedback_type for r in results] == ["bug", "praise"]
        assert results[0].technical_severity == 90
        assert results[0].keywords == ["login", "crash"]
        agent.chat_single.assert_called_once()
        assert agent.chat_single.call_args.kwargs["max_tokens"] == 2000

    def test_code_fence_stripped(self, mock_config, agent):
        classifier = FeedbackClassifier(mock_config, agent=agent)
        response = '```json\n[{"feedback_type": "question", "technical_severity": 20}]\n```'

        results = classifier.parse_response(response, 1)

        assert results[0].feedback_type == "question"
        assert results[0].technical_severity == 20

    @pytest.mark.parametrize("response", [
        "not json at all",
        '{"feedback_type": "bug"}',
        '[{"feedback_type": "bug"}]',
        '[{"feedback_type": "bogus"}, {"feedback_type": "bug"}]',
        '[{"sentiment_score": 5}, {}]',
        "",
    ])
    def test_unusable_response_falls_back(self, mock_config, agent, response):
        classifier = FeedbackClassifier(mock_config, agent=agent)

        results = classifier.parse_response(response, 2)

        assert len(results) == 2
        assert all(r.feedback_type == "unknown" for r in results)
        assert all(r.technical_severity == 50 for r in results)
        assert all(r.sentiment_score == 0.0 for r in results)

    def test_api_errors_propagate(self, mock_config, agent):
        agent.chat_single.side_effect = RuntimeError("connection reset")
        classifier = FeedbackClassifier(mock_config, agent=agent)

        with pytest.raises(RuntimeError):
            classifier.classify_batch([make_item()])

    def test_empty_batch_makes_no_call(self, mock_config, agent):
        classifier = FeedbackClassifier(mock_config, agent=agent)

        assert classifier.classify_batch([]) == []
        agent.chat_single.assert_not_called()

    @patch('src.agents.llm_agent.OpenAI')
    def test_builds_agent_from_config(self, mock_openai, mock_config):
        classifier = FeedbackClassifier(mock_config)

        assert isinstance(classifier.agent, ChatAgent)
