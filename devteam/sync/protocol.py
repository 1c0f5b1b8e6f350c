"""Wire messages of the sync protocol (one JSON object per WebSocket frame).

Client -> server:
    {"type": "hello", "subs": ["worktrees"]}
    {"type": "get.worktrees"}

Server -> client:
    {"type": "ready", "version": 3, "ts": 1700000000000}
    {"type": "worktrees.snapshot", "version": 3, "items": [...]}
"""

import time
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from devteam.core.models import Snapshot


class HelloMessage(BaseModel):  # type: ignore[explicit-any]
    """Client greeting declaring topic subscriptions."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["hello"]
    subs: list[str] = Field(default_factory=list)


class GetWorktreesMessage(BaseModel):  # type: ignore[explicit-any]
    """One-shot request for the current snapshot."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["get.worktrees"]


ClientMessage = Annotated[Union[HelloMessage, GetWorktreesMessage], Field(discriminator="type")]

CLIENT_MESSAGE_ADAPTER: TypeAdapter[Union[HelloMessage, GetWorktreesMessage]] = TypeAdapter(ClientMessage)


class ReadyMessage(BaseModel):  # type: ignore[explicit-any]
    model_config = ConfigDict(frozen=True)

    type: Literal["ready"] = "ready"
    version: int
    ts: int


class WorktreesSnapshotMessage(BaseModel):  # type: ignore[explicit-any]
    model_config = ConfigDict(frozen=True)

    type: Literal["worktrees.snapshot"] = "worktrees.snapshot"
    version: int
    items: list[dict[str, object]]  # guard: loose-dict

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot) -> "WorktreesSnapshotMessage":
        return cls(version=snapshot.version, items=snapshot.to_items())  # type: ignore[arg-type]


ServerMessage = Annotated[Union[ReadyMessage, WorktreesSnapshotMessage], Field(discriminator="type")]

SERVER_MESSAGE_ADAPTER: TypeAdapter[Union[ReadyMessage, WorktreesSnapshotMessage]] = TypeAdapter(ServerMessage)


def now_ms() -> int:
    return int(time.time() * 1000)
