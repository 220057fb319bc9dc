"""
Message payloads: a closed variant: either text or an uploaded attachment.

The attachment itself lives in object storage; we only keep what the storage
service returned (url, byte size, mime type) plus the original file name.
"""
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class TextPayload(BaseModel):
    kind: Literal["text"] = "text"
    content: str = Field(..., max_length=20000)


class AttachmentPayload(BaseModel):
    kind: Literal["attachment"] = "attachment"
    file_name: str = Field(..., min_length=1, max_length=255)
    byte_size: int
    url: str = Field(..., min_length=1)
    mime_type: str = Field(..., min_length=1, max_length=100)


MessagePayload = Annotated[Union[TextPayload, AttachmentPayload], Field(discriminator="kind")]
