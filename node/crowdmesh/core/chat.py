"""Bounded in-memory chat history for the current room."""

from __future__ import annotations

import itertools
from collections import deque

from crowdmesh.core.models import ChatMessage


class ChatLog:
    def __init__(self, max_messages: int = 500) -> None:
        self._messages: deque[ChatMessage] = deque(maxlen=max_messages)
        self._ids = itertools.count(1)

    def add(self, sender_id: str, text: str, timestamp_ms: int, *, is_me: bool = False) -> ChatMessage:
        msg = ChatMessage(
            id=f"{timestamp_ms}-{next(self._ids)}",
            sender_id=sender_id,
            text=text,
            timestamp_ms=timestamp_ms,
            is_me=is_me,
        )
        self._messages.append(msg)
        return msg

    def messages(self, limit: int | None = None) -> list[ChatMessage]:
        items = list(self._messages)
        if limit is not None:
            items = items[-limit:] if limit > 0 else []
        return items

    def clear(self) -> None:
        self._messages.clear()

    def __len__(self) -> int:
        return len(self._messages)
