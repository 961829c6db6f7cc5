import sys
from pathlib import Path


_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from typing import List, Sequence

import pytest

from sessionchat.exceptions import CompletionError
from sessionchat.models import ChatTurn
from sessionchat.services.completion import CompletionClient
from sessionchat.services.retrieval import Retriever
from sessionchat.services.session_store import InMemorySessionStore


class RecordingCompletion(CompletionClient):
    """Completion double that records calls and replies from a script."""

    def __init__(self, reply: str = "Hello!") -> None:
        self.reply = reply
        self.fail_with: Exception | None = None
        self.calls: List[tuple[str, List[ChatTurn], str]] = []

    async def complete(self, system_instruction: str, history: Sequence[ChatTurn], new_message: str) -> str:
        self.calls.append((system_instruction, list(history), new_message))
        if self.fail_with is not None:
            raise self.fail_with
        return self.reply


class StaticRetriever(Retriever):
    def __init__(self, snippets: List[str] | None = None, error: Exception | None = None) -> None:
        self.snippets = snippets or []
        self.error = error
        self.queries: List[str] = []

    async def query(self, text: str) -> List[str]:
        self.queries.append(text)
        if self.error is not None:
            raise self.error
        return self.snippets


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def completion() -> RecordingCompletion:
    return RecordingCompletion()


@pytest.fixture
def failing_completion() -> RecordingCompletion:
    c = RecordingCompletion()
    c.fail_with = CompletionError("upstream 500")
    return c
