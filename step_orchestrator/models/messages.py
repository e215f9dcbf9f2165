"""
Chat message formats and the chat transport protocol

The orchestrator never renders or stores messages itself; it hands
replies and partial status updates to a ChatClient supplied by the host.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, Protocol, runtime_checkable

from .task import new_id


@dataclass
class Message:
    """A chat post (inbound user message or agent reply)"""
    text: str
    user_id: Optional[str] = None
    thread_id: Optional[str] = None
    channel_id: Optional[str] = None
    props: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def project_id(self) -> Optional[str]:
        return self.props.get("project_id")


@runtime_checkable
class ChatClient(Protocol):
    """Chat transport collaborator"""

    def reply(self, post: Message, text: str, props: Optional[Dict[str, Any]] = None) -> Message:
        ...

    def update_post(self, post_id: str, text: str, props: Optional[Dict[str, Any]] = None) -> Message:
        ...
