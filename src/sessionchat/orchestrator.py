import logging
from typing import Any, Mapping

from .exceptions import ChatRequestError
from .formatting import ensure_code_fences
from .models import MAX_TURNS, ChatTurn, truncate_history
from .services.completion import CompletionClient
from .services.retrieval import Retriever, best_effort, join_snippets
from .services.session_store import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_SESSION_ID = "default"


def parse_chat_request(payload: Any) -> tuple[str, str]:
    """Return ``(session_id, message)`` from a /api/chat body.

    ``sessionId`` defaults to ``"default"`` when absent or null; ``message`` must be a non-empty string.
    """
    body: Mapping[str, Any] = payload if isinstance(payload, Mapping) else {}
    message = body.get("message")
    if not isinstance(message, str) or not message:
        raise ChatRequestError("message required")
    session_id = body.get("sessionId")
    if session_id is None:
        session_id = DEFAULT_SESSION_ID
    return str(session_id), message


def parse_reset_request(payload: Any) -> str:
    """Return the session id from a /api/reset body, which must name one."""
    body: Mapping[str, Any] = payload if isinstance(payload, Mapping) else {}
    session_id = body.get("sessionId")
    if not session_id:
        raise ChatRequestError(
            "sessionId required",
            payload={"ok": False, "error": "sessionId required"},
        )
    return str(session_id)


def build_instruction(system_prompt: str, context: str) -> str:
    if not context:
        return system_prompt
    return f"{system_prompt}\n\nContext:\n{context}"


class ChatOrchestrator:
    """Runs one chat exchange against a session's stored history.

    Steps run strictly in order: load history, optionally retrieve context,
    call the completion client, then append both turns and persist. A failed
    completion propagates and leaves the stored history untouched.
    """

    def __init__(
        self,
        store: SessionStore,
        completion: CompletionClient,
        system_prompt: str,
        retriever: Retriever | None = None,
        max_turns: int = MAX_TURNS,
    ) -> None:
        self.store = store
        self.completion = completion
        self.retriever = retriever
        self.system_prompt = system_prompt
        self.max_turns = max_turns

    async def _context_for(self, message: str) -> str:
        if self.retriever is None:
            return ""
        snippets = await best_effort(self.retriever.query(message), [], what="Context retrieval")
        return join_snippets(snippets)

    async def chat(self, session_id: str, message: str) -> str:
        """Handle one user turn and return the assistant reply."""
        history = await self.store.get(session_id)
        logger.info("Chat session_id=%s history_turns=%d", session_id, len(history))

        context = await self._context_for(message)
        instruction = build_instruction(self.system_prompt, context)

        reply = await self.completion.complete(instruction, history, message)
        reply = ensure_code_fences(reply)

        updated = truncate_history(
            [
                *history,
                ChatTurn(role="user", content=message),
                ChatTurn(role="assistant", content=reply),
            ],
            self.max_turns,
        )
        await self.store.put(session_id, updated)
        logger.debug("Persisted session_id=%s turns=%d", session_id, len(updated))
        return reply

    async def reset(self, session_id: str) -> None:
        """Erase a session's history. Succeeds whether or not it existed."""
        await self.store.delete(session_id)
        logger.info("Reset session_id=%s", session_id)
