import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Literal, Sequence

logger = logging.getLogger(__name__)

MAX_TURNS = 20

Role = Literal["user", "assistant"]
ROLES: tuple[str, ...] = ("user", "assistant")


@dataclass(frozen=True)
class ChatTurn:
    """One message in a conversation, tagged with its speaker role."""

    role: Role
    content: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


SessionHistory = List[ChatTurn]


def truncate_history(history: Sequence[ChatTurn], max_turns: int = MAX_TURNS) -> SessionHistory:
    """Keep the most recent ``max_turns`` turns, dropping the oldest first."""
    if max_turns <= 0:
        return []
    return list(history[-max_turns:])


def history_to_records(history: Iterable[ChatTurn]) -> List[Dict[str, str]]:
    """Serialize turns to ``{role, content}`` dicts (JSON-ready)."""
    return [turn.to_dict() for turn in history]


def history_from_records(records: Any) -> SessionHistory:
    """Build turns from stored records, skipping entries that are not valid turns."""
    if not isinstance(records, list):
        raise TypeError(f"expected a list of turns, got {type(records).__name__}")
    turns: SessionHistory = []
    for record in records:
        if not isinstance(record, dict):
            logger.warning("Skipping non-object turn record: %r", record)
            continue
        role = record.get("role")
        content = record.get("content")
        if role not in ROLES or not isinstance(content, str):
            logger.warning("Skipping malformed turn record (role=%r)", role)
            continue
        turns.append(ChatTurn(role=role, content=content))
    return turns
