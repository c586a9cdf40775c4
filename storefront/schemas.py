from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, field_validator


class DownloadRequestIn(BaseModel):
    game_slug: Optional[str] = None
    kind: Optional[str] = None
    device: Optional[str] = None

    @field_validator("game_slug", "kind", "device", mode="before")
    @classmethod
    def strip_or_none(cls, value: Any) -> Optional[str]:
        if not isinstance(value, str):
            return None
        cleaned = value.strip()
        return cleaned or None

    @classmethod
    def from_body(cls, body: Any) -> "DownloadRequestIn":
        """Build from whatever the client sent; anything but an object is empty."""
        if not isinstance(body, dict):
            return cls()
        return cls.model_validate(
            {key: body.get(key) for key in ("game_slug", "kind", "device")}
        )


class DownloadUrlOut(BaseModel):
    url: str


class ErrorOut(BaseModel):
    error: str


class DownloadTargetOut(BaseModel):
    device: str
    kind: str
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
