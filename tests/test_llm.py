"""Research assistant tests — OpenAI client replaced by a scripted fake."""

from types import SimpleNamespace

import httpx
import pytest
from openai import APIConnectionError

from utils import llm


class ScriptedCompletions:
    def __init__(self, *replies):
        self.replies = list(replies)
        self.requests = []

    def create(self, **request):
        self.requests.append(request)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=reply))])


def _connection_error():
    return APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))


@pytest.fixture
def completions(monkeypatch):
    def install(*replies):
        scripted = ScriptedCompletions(*replies)
        monkeypatch.setattr(llm, "_client", SimpleNamespace(chat=SimpleNamespace(completions=scripted)))
        return scripted
    return install


@pytest.fixture
def sleeps(monkeypatch):
    delays = []
    monkeypatch.setattr(llm.time, "sleep", delays.append)
    return delays


class TestAnalystPrompt:
    def test_capability_instruction(self):
        prompt = llm.analyst_prompt("critique")
        assert prompt.startswith(llm.ANALYST_PERSONA)
        assert "skeptical reviewer" in prompt
        assert llm.JSON_REPLY not in prompt

    def test_unknown_capability_falls_back(self):
        assert llm.analyst_prompt("poetry") == llm.analyst_prompt("summarize")
        assert llm.analyst_prompt("poetry", json_reply=True) == llm.analyst_prompt("extract", json_reply=True)
        assert llm.analyst_prompt("extract", json_reply=True).endswith(llm.JSON_REPLY)


class TestAskAnalyst:
    def test_text_reply(self, completions):
        scripted = completions("Margins expanded.")

        assert llm.ask_analyst("Summarize the quarter", capability="summarize") == "Margins expanded."
        request = scripted.requests[0]
        assert request["messages"][1] == {"role": "user", "content": "Summarize the quarter"}
        assert "response_format" not in request

    def test_json_reply(self, completions):
        scripted = completions('{"revenue": 100}')

        assert llm.ask_analyst_json("Extract revenue") == {"revenue": 100}
        assert scripted.requests[0]["response_format"] == {"type": "json_object"}

    def test_malformed_json(self, completions):
        completions("not json")
        reply = llm.ask_analyst_json("Extract revenue")
        assert reply["error"] == "JSON parse failed"
        assert reply["raw"] == "not json"

    def test_non_object_json(self, completions):
        completions("[1, 2]")
        assert llm.ask_analyst_json("Extract revenue")["error"] == "JSON reply was not an object"

    def test_retries_with_backoff(self, completions, sleeps):
        scripted = completions(_connection_error(), _connection_error(), "ok")

        assert llm.ask_analyst("hello") == "ok"
        assert len(scripted.requests) == 3
        assert sleeps == [llm.BASE_DELAY, llm.BASE_DELAY * 2]

    def test_gives_up_after_max_attempts(self, completions, sleeps):
        completions(*[_connection_error() for _ in range(llm.MAX_ATTEMPTS)])

        with pytest.raises(APIConnectionError):
            llm.ask_analyst("hello")
        assert len(sleeps) == llm.MAX_ATTEMPTS - 1
