"""Incremental framing of streamed chat responses.

Both parsers accept text chunks of arbitrary size and return the fragments
that became complete with that chunk. Lines are only parsed once their
terminating newline has arrived (or on ``flush`` at end of stream).
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import MalformedFragment, ServerConnectionError


logger = logging.getLogger("uvicorn.error")

MAX_LINE_LENGTH = 1_000_000


@dataclass
class ChatFragment:
    content: str
    done: bool = False
    data: Dict[str, Any] = field(default_factory=dict)


class LineFramer(ABC):
    def __init__(self, max_consecutive_failures: int = 5, max_line_length: int = MAX_LINE_LENGTH) -> None:
        self.max_consecutive_failures = max_consecutive_failures
        self.max_line_length = max_line_length
        self.dropped = 0
        self._consecutive_failures = 0
        self._buffer = ""
        self._discarding = False

    def feed(self, chunk: str) -> List[ChatFragment]:
        if not chunk:
            return []
        self._buffer += chunk
        fragments: List[ChatFragment] = []
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            if self._discarding:
                # tail of an oversized line
                self._discarding = False
                continue
            fragment = self._parse_line(line.strip())
            if fragment is not None:
                fragments.append(fragment)
        if self._discarding:
            self._buffer = ""
        elif self.max_line_length and len(self._buffer) > self.max_line_length:
            self._buffer = ""
            self._discarding = True
            self._record_failure(
                MalformedFragment("", f"line longer than {self.max_line_length} characters")
            )
        return fragments

    def flush(self) -> List[ChatFragment]:
        line, self._buffer = self._buffer.strip(), ""
        if self._discarding:
            self._discarding = False
            return []
        if not line:
            return []
        fragment = self._parse_line(line)
        return [fragment] if fragment is not None else []

    @abstractmethod
    def _parse_line(self, line: str) -> Optional[ChatFragment]:
        ...

    def _load_object(self, raw: str) -> Optional[Dict[str, Any]]:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            self._record_failure(MalformedFragment(raw, str(exc)))
            return None
        if not isinstance(data, dict):
            self._record_failure(MalformedFragment(raw, "not a JSON object"))
            return None
        self._consecutive_failures = 0
        return data

    def _record_failure(self, exc: MalformedFragment) -> None:
        self.dropped += 1
        self._consecutive_failures += 1
        logger.warning("Dropped stream fragment (%d so far): %s", self.dropped, exc)
        limit = self.max_consecutive_failures
        if limit > 0 and self._consecutive_failures >= limit:
            raise ServerConnectionError(
                f"Stream looks corrupt: {self._consecutive_failures} malformed fragments in a row"
            ) from exc


class NDJSONFragmentParser(LineFramer):
    """Ollama-style newline-delimited JSON, tolerant of leading noise."""

    def _parse_line(self, line: str) -> Optional[ChatFragment]:
        start = line.find("{")
        if start < 0:
            return None
        data = self._load_object(line[start:])
        if data is None:
            return None
        if data.get("error"):
            raise ServerConnectionError(str(data["error"]))
        message = data.get("message")
        content: Any = ""
        if isinstance(message, dict):
            content = message.get("content") or ""
        elif "response" in data:
            content = data.get("response") or ""
        return ChatFragment(content=str(content), done=bool(data.get("done")), data=data)


class SSEFragmentParser(LineFramer):
    """OpenAI-compatible server-sent events (``data:`` lines)."""

    def _parse_line(self, line: str) -> Optional[ChatFragment]:
        if not line.startswith("data:"):
            return None
        chunk = line[len("data:"):].strip()
        if not chunk:
            return None
        if chunk == "[DONE]":
            return ChatFragment(content="", done=True)
        data = self._load_object(chunk)
        if data is None:
            return None
        if data.get("error"):
            error = data["error"]
            detail = error.get("message") if isinstance(error, dict) else error
            raise ServerConnectionError(str(detail))
        choices = data.get("choices") or [{}]
        choice = choices[0] if isinstance(choices[0], dict) else {}
        delta = choice.get("delta") or {}
        content = delta.get("content") or ""
        return ChatFragment(content=str(content), done=bool(choice.get("finish_reason")), data=data)
