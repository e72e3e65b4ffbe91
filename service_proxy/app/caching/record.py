"""
Cache record model and its on-disk codec.

A record is stored as one UTF-8 JSON document per cache key:

    {"type": "cache", "url": ..., "status": ..., "headers": "<json object>",
     "text": ..., "contentType": ..., "created": <epoch ms>}

``headers`` is itself a JSON-encoded string mapping. Repeated upstream header
names arrive already merged into one comma-joined value, so a record keeps a
single value per name.
"""

import json
from dataclasses import dataclass
from typing import Dict, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from shared.errors import CacheDecodeError


DEFAULT_CONTENT_TYPE = "application/json"
RECORD_TYPE = "cache"

_HEADERS_ADAPTER = TypeAdapter(Dict[str, str])


@dataclass(frozen=True)
class CacheRecord:
    """Persisted upstream response for one resolved URL."""

    url: str
    status: int
    headers: Dict[str, str]
    body: str
    content_type: str
    created_at: int

    def age_ms(self, now_ms: int) -> int:
        return now_ms - self.created_at

    def is_expired(self, now_ms: int, ttl_ms: int) -> bool:
        """A record exactly ``ttl_ms`` old is still fresh."""
        return self.age_ms(now_ms) > ttl_ms


class StoredCacheRecord(BaseModel):
    """Wire shape of a record on disk."""

    model_config = ConfigDict(strict=True, populate_by_name=True, extra="ignore")

    type: Literal["cache"]
    url: str
    status: int = Field(ge=100, le=599)
    headers: str
    text: str
    content_type: str = Field(alias="contentType")
    created: int = Field(ge=0)


def encode(record: CacheRecord) -> bytes:
    """Serialize a record; equal records always produce equal bytes."""
    stored = StoredCacheRecord(
        type=RECORD_TYPE,
        url=record.url,
        status=record.status,
        headers=json.dumps(record.headers),
        text=record.body,
        content_type=record.content_type,
        created=record.created_at,
    )
    return stored.model_dump_json(by_alias=True).encode("utf-8")


def decode(data: bytes) -> CacheRecord:
    """Parse stored bytes back into a record.

    Raises CacheDecodeError for anything that is not a complete, well-typed
    record. Callers treat that as a cache miss.
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise CacheDecodeError("Cache record is not valid UTF-8", {"error": str(exc)}) from exc

    try:
        stored = StoredCacheRecord.model_validate_json(text)
    except ValidationError as exc:
        raise CacheDecodeError(
            "Cache record failed validation",
            {"errors": [error["type"] for error in exc.errors()]},
        ) from exc

    try:
        headers = _HEADERS_ADAPTER.validate_json(stored.headers, strict=True)
    except ValidationError as exc:
        raise CacheDecodeError(
            "Cache record headers are not a string mapping",
            {"errors": [error["type"] for error in exc.errors()]},
        ) from exc

    return CacheRecord(
        url=stored.url,
        status=stored.status,
        headers=headers,
        body=stored.text,
        content_type=stored.content_type,
        created_at=stored.created,
    )
