"""Tests for the OpenRouter chat client."""

import pytest
from unittest.mock import patch, MagicMock

from graph_memory.config import Config
from graph_memory.llm import LLMError, OpenRouterChat, parse_json_reply


@pytest.fixture
def chat():
    return OpenRouterChat(api_key="test-key", config=Config())


class TestParseJsonReply:
    def test_plain_object(self):
        assert parse_json_reply('{"sufficient": true, "confidence": 0.8}') == {
            "sufficient": True, "confidence": 0.8,
        }

    def test_fenced_with_chatter(self):
        reply = '```json\nSure! {"sufficient": false, "confidence": 0.2}\n```'
        assert parse_json_reply(reply)["sufficient"] is False

    @pytest.mark.parametrize("reply", ["", "no json here", "{not json}", "[1, 2]"])
    def test_garbage(self, reply):
        with pytest.raises(LLMError):
            parse_json_reply(reply)


class TestChat:
    def test_available(self, chat):
        assert chat.available is True
        assert OpenRouterChat(api_key="", config=Config()).available is False

    @patch("graph_memory.openrouter.requests.post")
    def test_complete_sync(self, mock_post, chat):
        resp = MagicMock()
        resp.status_code = 200
        resp.json.return_value = {"choices": [{"message": {"content": "  Work life: busy.  "}}]}
        mock_post.return_value = resp

        assert chat.complete_sync("rewrite", system="be brief") == "Work life: busy."
        messages = mock_post.call_args.kwargs["json"]["messages"]
        assert [m["role"] for m in messages] == ["system", "user"]

    @patch("graph_memory.openrouter.requests.post")
    def test_http_error(self, mock_post, chat):
        resp = MagicMock()
        resp.status_code = 400
        resp.text = "bad request"
        mock_post.return_value = resp
        with pytest.raises(LLMError, match="400"):
            chat.complete_sync("hi")

    @patch("graph_memory.openrouter.requests.post")
    def test_no_key(self, mock_post):
        with pytest.raises(LLMError):
            OpenRouterChat(api_key="", config=Config()).complete_sync("hi")
        mock_post.assert_not_called()

    @pytest.mark.asyncio
    @patch("graph_memory.openrouter.requests.post")
    async def test_complete_json(self, mock_post, chat):
        resp = MagicMock()
        resp.status_code = 200
        resp.json.return_value = {
            "choices": [{"message": {"content": '{"sufficient": true, "confidence": 0.9}'}}]
        }
        mock_post.return_value = resp
        verdict = await chat.complete_json("judge this")
        assert verdict == {"sufficient": True, "confidence": 0.9}
        assert mock_post.call_args.kwargs["json"]["temperature"] == 0.0
