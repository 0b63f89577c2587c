import datetime as dt
from typing import Annotated, Any, Optional
from pydantic import BaseModel, Field, ConfigDict, BeforeValidator, field_serializer

# MongoDB ObjectIds come back as ObjectId; everything above the store sees strings
PyObjectId = Annotated[str, BeforeValidator(str)]


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class DocumentModel(BaseModel):
    """Base for records that round-trip through a document store."""

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
    )

    id: Optional[PyObjectId] = Field(None, alias="_id")
    created_at: dt.datetime = Field(default_factory=utc_now)
    updated_at: dt.datetime = Field(default_factory=utc_now)

    @field_serializer("created_at", "updated_at", when_used="json")
    def serialize_dt(self, value: dt.datetime):
        return value.isoformat()

    def to_document(self) -> dict[str, Any]:
        """Mongo-ready dict: python datetimes kept, `_id` omitted when unset."""
        document = self.model_dump(by_alias=True, exclude={"id"})
        if self.id is not None:
            document["_id"] = self.id
        return document
