"""
Converse Bridge - Session history persistence contract.

The orchestrator writes every exchanged message through a ``SessionStore``.
Writes are awaited in order so a message is always durable before any
message that depends on it. ``get_session`` is synchronous: it is only
read when switching sessions.
"""

import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from .models import Message


@dataclass
class StoredSession:
    """A persisted conversation."""

    id: str
    agent_kind: str
    model_id: str
    system_prompt: Optional[str] = None
    messages: list[Message] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_kind": self.agent_kind,
            "model_id": self.model_id,
            "system_prompt": self.system_prompt,
            "messages": [m.to_dict() for m in self.messages],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StoredSession":
        return cls(
            id=data["id"],
            agent_kind=data.get("agent_kind", "defaultAgent"),
            model_id=data.get("model_id", ""),
            system_prompt=data.get("system_prompt"),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            created_at=data.get("created_at", time.time()),
            updated_at=data.get("updated_at", time.time()),
        )


class SessionStore(ABC):
    """Durable storage for conversations."""

    @abstractmethod
    async def create_session(
        self, agent_kind: str, model_id: str, system_prompt: Optional[str] = None
    ) -> str:
        """Create an empty session and return its id."""

    @abstractmethod
    def get_session(self, session_id: str) -> Optional[StoredSession]:
        """Load a session, or None if it does not exist."""

    @abstractmethod
    async def add_message(self, session_id: str, message: Message) -> None:
        """Append a message to a session."""

    @abstractmethod
    async def delete_message(self, session_id: str, index: int) -> None:
        """Delete the message at ``index`` from a session."""

    @abstractmethod
    async def set_active_session(self, session_id: str) -> None:
        """Mark a session as the active one."""


class InMemorySessionStore(SessionStore):
    """Process-local ``SessionStore``, used in tests and embedded setups."""

    def __init__(self) -> None:
        self._sessions: dict[str, StoredSession] = {}
        self.active_session_id: Optional[str] = None

    @property
    def sessions(self) -> dict[str, StoredSession]:
        return self._sessions

    async def create_session(
        self, agent_kind: str, model_id: str, system_prompt: Optional[str] = None
    ) -> str:
        session_id = str(uuid.uuid4())
        self._sessions[session_id] = StoredSession(
            id=session_id,
            agent_kind=agent_kind,
            model_id=model_id,
            system_prompt=system_prompt,
        )
        self.active_session_id = session_id
        return session_id

    def get_session(self, session_id: str) -> Optional[StoredSession]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        return StoredSession(
            id=session.id,
            agent_kind=session.agent_kind,
            model_id=session.model_id,
            system_prompt=session.system_prompt,
            messages=[m.copy() for m in session.messages],
            created_at=session.created_at,
            updated_at=session.updated_at,
        )

    async def add_message(self, session_id: str, message: Message) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"Unknown session: {session_id}")
        session.messages.append(message.copy())
        session.updated_at = time.time()

    async def delete_message(self, session_id: str, index: int) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"Unknown session: {session_id}")
        if 0 <= index < len(session.messages):
            del session.messages[index]
            session.updated_at = time.time()

    async def set_active_session(self, session_id: str) -> None:
        if session_id not in self._sessions:
            raise KeyError(f"Unknown session: {session_id}")
        self.active_session_id = session_id
