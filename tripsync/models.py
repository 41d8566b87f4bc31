"""
Domain records synchronized by the client.

Every record carries a stable integer id; ids below zero are temporary ids
minted on the device before the server acknowledged the record.
"""

from typing import Any, ClassVar, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class SyncRecord(BaseModel):
    """Base model for every cached, reconcilable record."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    # Attributes that only exist on the device and never travel over the wire
    local_fields: ClassVar[frozenset[str]] = frozenset()

    id: int
    updated_at: str | None = Field(default=None, alias="updatedAt")

    @property
    def is_temporary(self) -> bool:
        return self.id < 0

    def wire_dump(self) -> dict[str, Any]:
        """Payload sent to the server: no id, no local-only fields."""
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude={"id", "updated_at", *self.local_fields},
            exclude_none=False,
        )

    def local_dump(self) -> dict[str, Any]:
        """Full snapshot, including local-only fields, for on-device storage."""
        return self.model_dump(mode="json", by_alias=True)

    def same_content(self, other: "SyncRecord") -> bool:
        """Compare wire-visible content, ignoring local-only fields."""
        if self.updated_at is not None and other.updated_at is not None:
            return self.updated_at == other.updated_at
        return self.wire_dump() == other.wire_dump()

    def carry_local_fields(self, source: "SyncRecord") -> "SyncRecord":
        """Copy of self with local-only fields taken from source when missing here."""
        updates = {
            name: getattr(source, name)
            for name in self.local_fields
            if getattr(self, name, None) is None and getattr(source, name, None) is not None
        }
        return self.model_copy(update=updates) if updates else self


class Trip(SyncRecord):
    name: str
    description: str | None = None
    address: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    created_by_user_id: int | None = None


class TripDay(SyncRecord):
    trip_id: int
    day: str


class Activity(SyncRecord):
    trip_day_id: int
    activity: str
    address: str = ""
    start_time: str | None = None
    end_time: str | None = None
    estimated_cost: float = 0.0
    actual_cost: float = 0.0
    note: str | None = None


class Participant(SyncRecord):
    trip_id: int
    user_id: int
    role: str = "member"


class PackingItem(SyncRecord):
    name: str
    quantity: int = 1
    is_packed: bool = False
    is_shared: bool = False
    created_by_user_id: int | None = None
    assigned_to_user_id: int | None = None
    note: str | None = None


class ActivityImage(SyncRecord):
    local_fields: ClassVar[frozenset[str]] = frozenset({"cached_thumbnail"})

    activity_id: int
    url: str
    public_id: str | None = None
    # base64 thumbnail kept on the device for offline display
    cached_thumbnail: str | None = None


class ApiResponse(BaseModel, Generic[T]):
    """Standard server envelope."""

    success: bool = True
    message: str | None = None
    status_code: int | None = Field(default=None, alias="statusCode")
    data: T


class TokenPair(BaseModel):
    access_token: str = Field(alias="accessToken")
    refresh_token: str = Field(alias="refreshToken")


class TokenData(BaseModel):
    token: TokenPair
