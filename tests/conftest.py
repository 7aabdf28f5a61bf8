"""
Shared fixtures: a scripted stand-in for the OpenAI async client.

The fake mirrors only the surface the gateway touches:
``client.chat.completions.create(**kwargs)`` returning an object with
``choices[0].message.content`` / ``finish_reason`` / ``usage.total_tokens``,
or an async iterator of delta chunks when ``stream=True``.
"""

import asyncio
import os
import sys
from types import SimpleNamespace
from typing import Any, Dict, List

import pytest

# Add project root to path
project_root = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.join(project_root, "edutwin", "src"))

from edutwin.llm_client import LLMGateway
from edutwin.student_state import StudentStateStore

VALID_KEY = "sk-" + "x" * 48


class StatusError(Exception):
    """Exception carrying an HTTP status like the SDK's APIStatusError."""

    def __init__(self, status_code: int, message: str = "request failed"):
        super().__init__(message)
        self.status_code = status_code


def make_completion(content: str, finish_reason: str = "stop", total_tokens: int = 42):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content), finish_reason=finish_reason)],
        usage=SimpleNamespace(total_tokens=total_tokens),
    )


class FakeStream:
    """Async iterator of delta chunks; an Exception item is raised mid-stream."""

    def __init__(self, items: List[Any]):
        self.items = list(items)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self.items:
            raise StopAsyncIteration
        item = self.items.pop(0)
        if isinstance(item, BaseException):
            raise item
        return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=item))])


class FakeCompletions:
    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.responses: List[Any] = []
        self.default = "Here is a helpful answer."

    def queue(self, *items: Any) -> None:
        """Queue replies: a str, an Exception to raise, or a list of stream deltas."""
        self.responses.extend(items)

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        # Yield like real network I/O so overlapping calls interleave
        await asyncio.sleep(0)
        item = self.responses.pop(0) if self.responses else self.default
        if isinstance(item, BaseException):
            raise item
        if kwargs.get("stream"):
            return FakeStream(item if isinstance(item, list) else [item])
        return make_completion(item)


class FakeOpenAIClient:
    def __init__(self):
        self.completions = FakeCompletions()
        self.chat = SimpleNamespace(completions=self.completions)

    @property
    def calls(self) -> List[Dict[str, Any]]:
        return self.completions.calls

    def queue(self, *items: Any) -> None:
        self.completions.queue(*items)


@pytest.fixture
def fake_client():
    return FakeOpenAIClient()


@pytest.fixture
def gateway(fake_client):
    """Gateway with a valid key talking to the fake client."""
    return LLMGateway(api_key=VALID_KEY, client=fake_client)


@pytest.fixture
def offline_gateway(fake_client):
    """Gateway without a credential; the fake client must never be reached."""
    return LLMGateway(api_key=None, client=fake_client)


@pytest.fixture
def store():
    return StudentStateStore()
