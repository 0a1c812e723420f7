from typing import Dict, Iterable, List

from .schemas import Message, Role


class ConversationStore:
    """Per-model message history bounded to ``2 * max_pairs`` entries."""

    def __init__(self, max_pairs: int = 10) -> None:
        if max_pairs < 1:
            raise ValueError("max_pairs must be at least 1")
        self.max_pairs = max_pairs
        self._histories: Dict[str, List[Message]] = {}

    @property
    def max_messages(self) -> int:
        return 2 * self.max_pairs

    def append(self, model: str, role: Role, content: str) -> None:
        history = self._histories.setdefault(model, [])
        history.append(Message(role=role, content=content))
        self._truncate(model)

    def append_pair(self, model: str, user: str, assistant: str) -> None:
        history = self._histories.setdefault(model, [])
        history.extend([Message(role="user", content=user), Message(role="assistant", content=assistant)])
        self._truncate(model)

    def get(self, model: str) -> List[Message]:
        return list(self._histories.get(model, []))

    def models(self) -> List[str]:
        return [model for model, history in self._histories.items() if history]

    def clear(self, model: str) -> None:
        self._histories.pop(model, None)

    def clear_all(self) -> None:
        self._histories.clear()

    def replace(self, model: str, messages: Iterable[Message]) -> None:
        self._histories[model] = [m if isinstance(m, Message) else Message.model_validate(m) for m in messages]
        self._truncate(model)

    def resize(self, max_pairs: int) -> None:
        if max_pairs < 1:
            raise ValueError("max_pairs must be at least 1")
        self.max_pairs = max_pairs
        for model in self._histories:
            self._truncate(model)

    def snapshot(self) -> Dict[str, List[Message]]:
        return {model: list(history) for model, history in self._histories.items() if history}

    def _truncate(self, model: str) -> None:
        history = self._histories[model]
        overflow = len(history) - self.max_messages
        if overflow > 0:
            del history[:overflow]
