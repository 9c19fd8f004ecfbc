from dataclasses import dataclass
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class FileMetadata(BaseModel):
    """Text frame announcing the file that the following binary frames carry."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["metadata"] = "metadata"
    name: str
    size: int = Field(..., ge=0)
    mime_type: str = Field(
        "application/octet-stream",
        serialization_alias="mimeType",
        validation_alias=AliasChoices("mimeType", "fileType", "mime_type"),
    )


@dataclass
class ReceivedFile:
    name: str
    mime_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class SharedToken:
    """What a peer hands to the user after publishing a description.

    ``text`` is a short link when the token store accepted the payload and the
    raw description JSON otherwise.
    """

    text: str
    shortened: bool
