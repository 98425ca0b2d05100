from typing import List, Optional

from pydantic import BaseModel, field_validator


class PathIn(BaseModel):
    path: Optional[str] = None

    @field_validator('path')
    @classmethod
    def strip_path(cls, v):
        if v is None:
            return v
        v = v.strip()
        return v or None


class UploadOut(BaseModel):
    message: str
    token: str
    filePath: str
    url: str


class TokenOut(BaseModel):
    message: str
    token: str
    url: str
    downloadURL: str


class FileEntryOut(BaseModel):
    name: str
    kind: str
    path: str
    missingMetadata: bool = False


class FileListOut(BaseModel):
    message: str
    files: List[FileEntryOut]


class MessageOut(BaseModel):
    message: str
