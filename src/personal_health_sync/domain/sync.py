"""
Sync domain models and observer events.

This module defines the durable queue entry and the closed set of events
the sync engine publishes to its listeners.
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

LAST_MODIFIED_FIELD = "lastModified"


class SyncItem(BaseModel):
    """
    A pending mutation waiting for remote acceptance.

    Items are immutable; the only field that changes over an item's life is
    the retry counter, which is updated by producing a copy.
    """

    id: str = Field(description="Unique item identifier")
    kind: str = Field(description="Mutation type used to route replay")
    payload: dict[str, Any] = Field(description="Mutation data including lastModified")
    enqueued_at: int = Field(alias="enqueuedAt", description="Enqueue time (epoch ms)")
    retry_count: int = Field(0, alias="retryCount", ge=0, description="Failed delivery attempts")
    offline_origin: bool = Field(
        False, alias="offlineOrigin", description="Created while connectivity was absent"
    )

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def last_modified(self) -> int | None:
        """Timestamp stamped into the payload at enqueue time."""
        value = self.payload.get(LAST_MODIFIED_FIELD)
        return int(value) if value is not None else None

    def with_retry_count(self, retry_count: int) -> "SyncItem":
        """Return a copy carrying a new retry counter."""
        return self.model_copy(update={"retry_count": retry_count})

    def to_storage_dict(self) -> dict[str, Any]:
        """Serialize using the persisted camelCase field names."""
        return self.model_dump(by_alias=True)


class SyncStartEvent(BaseModel):
    """A drain pass has started."""

    type: Literal["sync-start"] = "sync-start"


class SyncCompleteEvent(BaseModel):
    """A drain pass has finished."""

    type: Literal["sync-complete"] = "sync-complete"
    synced: list[SyncItem] = Field(default_factory=list)
    failed: list[SyncItem] = Field(
        default_factory=list, description="Items abandoned after reaching the retry ceiling"
    )
    remaining: int = 0


class SyncErrorEvent(BaseModel):
    """A drain pass stopped because durable storage failed."""

    type: Literal["sync-error"] = "sync-error"
    message: str


class QueuedEvent(BaseModel):
    """An item was queued for a later, deferred delivery."""

    type: Literal["queued"] = "queued"
    item: SyncItem


class OnlineEvent(BaseModel):
    """Connectivity was restored."""

    type: Literal["online"] = "online"


class OfflineEvent(BaseModel):
    """Connectivity was lost."""

    type: Literal["offline"] = "offline"


class QueueClearedEvent(BaseModel):
    """All pending items were discarded."""

    type: Literal["queue-cleared"] = "queue-cleared"


class BackgroundSyncCompleteEvent(BaseModel):
    """A background delivery agent finished a pass."""

    type: Literal["background-sync-complete"] = "background-sync-complete"
    synced_count: int = 0
    remaining: int = 0
    tag: str | None = None


SyncEvent = Annotated[
    Union[
        SyncStartEvent,
        SyncCompleteEvent,
        SyncErrorEvent,
        QueuedEvent,
        OnlineEvent,
        OfflineEvent,
        QueueClearedEvent,
        BackgroundSyncCompleteEvent,
    ],
    Field(discriminator="type"),
]


class SyncStatus(BaseModel):
    """Read-only snapshot of the sync engine."""

    online: bool
    syncing: bool
    queue_length: int
    queue: list[SyncItem] = Field(default_factory=list)
