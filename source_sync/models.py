"""Source data model and its JSON representation.

The persisted file and the WebSocket snapshots both use the camelCase keys
produced by :meth:`Source.to_dict`.  :meth:`Source.from_dict` also accepts
the ``sourceX`` key names written by older releases.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from source_sync.errors import ValidationError

LOADING_CONTENT = "Loading content..."
NO_CONTENT = "No content available"

CONTENT_TYPE_JSON = "application/json"
CONTENT_TYPE_FORM = "application/x-www-form-urlencoded"

# Legacy key -> current key
_LEGACY_KEYS = {
    "sourceId": "id",
    "sourceType": "type",
    "sourcePath": "path",
    "sourceTag": "tag",
    "sourceMethod": "method",
    "sourceContent": "content",
    "originalJson": "originalResponse",
}


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class SourceType(str, Enum):
    """Kinds of source the agent can resolve."""
    FILE = "file"
    ENV = "env"
    HTTP = "http"


def _parse_type(value: Any) -> SourceType:
    if isinstance(value, SourceType):
        return value
    try:
        return SourceType(str(value).lower())
    except ValueError:
        raise ValidationError(f"Unknown source type: {value!r}") from None


def _str_dict(value: Any) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(k): "" if v is None else str(v) for k, v in value.items()}


@dataclass
class RequestOptions:
    """How an HTTP source builds its request."""
    headers: dict[str, str] = field(default_factory=dict)
    query_params: dict[str, str] = field(default_factory=dict)
    body: Any = None
    content_type: str = CONTENT_TYPE_JSON
    totp_secret: str = ""
    variables: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "headers": dict(self.headers),
            "queryParams": dict(self.query_params),
            "body": self.body,
            "contentType": self.content_type,
            "totpSecret": self.totp_secret,
            "variables": dict(self.variables),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RequestOptions:
        data = data if isinstance(data, dict) else {}
        return cls(
            headers=_str_dict(data.get("headers")),
            query_params=_str_dict(data.get("queryParams")),
            body=data.get("body"),
            content_type=data.get("contentType") or CONTENT_TYPE_JSON,
            totp_secret=data.get("totpSecret") or "",
            variables=_str_dict(data.get("variables")),
        )


@dataclass
class JsonFilter:
    """Optional JSON path applied to HTTP response bodies."""
    enabled: bool = False
    path: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "path": self.path}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> JsonFilter:
        data = data if isinstance(data, dict) else {}
        return cls(enabled=bool(data.get("enabled")), path=str(data.get("path") or ""))


@dataclass
class RefreshOptions:
    """Refresh schedule; *interval* is in minutes, timestamps in epoch ms."""
    interval: float = 0
    last_refresh: int = 0
    next_refresh: int = 0

    @property
    def interval_seconds(self) -> float:
        return self.interval * 60

    def mark_refreshed(self, at_ms: int) -> None:
        """Record a refresh at *at_ms* and move the next refresh accordingly."""
        self.last_refresh = at_ms
        if self.interval > 0:
            self.next_refresh = at_ms + int(self.interval * 60_000)
        else:
            self.next_refresh = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "interval": self.interval,
            "lastRefresh": self.last_refresh,
            "nextRefresh": self.next_refresh,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RefreshOptions:
        """Build options from stored values; raises ValidationError if unusable."""
        data = data if isinstance(data, dict) else {}
        try:
            interval = float(data.get("interval") or 0)
            last_refresh = int(data.get("lastRefresh") or 0)
            next_refresh = int(data.get("nextRefresh") or 0)
        except (TypeError, ValueError, OverflowError) as exc:
            raise ValidationError(f"Invalid refresh options: {exc}") from None
        if not math.isfinite(interval):
            raise ValidationError(f"Invalid refresh interval: {interval}")
        interval = max(0.0, interval)
        if interval.is_integer():
            interval = int(interval)
        return cls(interval=interval, last_refresh=last_refresh, next_refresh=next_refresh)


def make_key(source_type: SourceType | str, path: str, method: str = "") -> str:
    """Duplicate-detection key: ``type:path``, or ``http:METHOD:path``."""
    source_type = _parse_type(source_type)
    if source_type == SourceType.HTTP:
        return f"{source_type.value}:{(method or 'GET').upper()}:{path}"
    return f"{source_type.value}:{path}"


@dataclass
class Source:
    """A configured source and its latest resolved content."""
    id: int
    type: SourceType
    path: str
    tag: str = ""
    method: str = ""
    content: str = ""
    original_response: str | None = None
    request_options: RequestOptions = field(default_factory=RequestOptions)
    json_filter: JsonFilter = field(default_factory=JsonFilter)
    refresh_options: RefreshOptions = field(default_factory=RefreshOptions)

    def key(self) -> str:
        return make_key(self.type, self.path, self.method)

    @property
    def is_http(self) -> bool:
        return self.type == SourceType.HTTP

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "path": self.path,
            "tag": self.tag,
            "method": self.method,
            "content": self.content,
            "originalResponse": self.original_response,
            "requestOptions": self.request_options.to_dict(),
            "jsonFilter": self.json_filter.to_dict(),
            "refreshOptions": self.refresh_options.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Source:
        """Build a source from its stored form; raises ValidationError."""
        if not isinstance(data, dict):
            raise ValidationError("Source record is not an object")
        data = {_LEGACY_KEYS.get(k, k): v for k, v in data.items()}
        try:
            source_id = int(data["id"])
        except (KeyError, TypeError, ValueError):
            raise ValidationError("Source record has no valid id") from None
        source_type = _parse_type(data.get("type"))
        path = str(data.get("path") or "")
        if not path:
            raise ValidationError(f"Source {source_id} has no path")
        method = str(data.get("method") or "").upper()
        if source_type == SourceType.HTTP and not method:
            method = "GET"
        content = data.get("content")
        original = data.get("originalResponse")
        return cls(
            id=source_id,
            type=source_type,
            path=path,
            tag=str(data.get("tag") or ""),
            method=method,
            content="" if content is None else str(content),
            original_response=None if original is None else str(original),
            request_options=RequestOptions.from_dict(data.get("requestOptions")),
            json_filter=JsonFilter.from_dict(data.get("jsonFilter")),
            refresh_options=RefreshOptions.from_dict(data.get("refreshOptions")),
        )

    def to_definition(self) -> SourceDefinition:
        return SourceDefinition(
            type=self.type,
            path=self.path,
            tag=self.tag,
            method=self.method,
            request_options=RequestOptions.from_dict(self.request_options.to_dict()),
            refresh_options=RefreshOptions(interval=self.refresh_options.interval),
            json_filter=JsonFilter.from_dict(self.json_filter.to_dict()),
        )


@dataclass
class SourceDefinition:
    """Portable description of a source used by export and import.

    Carries configuration only; content and refresh timestamps stay behind.
    """
    type: SourceType
    path: str
    tag: str = ""
    method: str = ""
    request_options: RequestOptions = field(default_factory=RequestOptions)
    refresh_options: RefreshOptions = field(default_factory=RefreshOptions)
    json_filter: JsonFilter = field(default_factory=JsonFilter)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "path": self.path,
            "tag": self.tag,
            "method": self.method,
            "requestOptions": self.request_options.to_dict(),
            "refreshOptions": {"interval": self.refresh_options.interval},
            "jsonFilter": self.json_filter.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SourceDefinition:
        if not isinstance(data, dict):
            raise ValidationError("Import entry is not an object")
        data = {_LEGACY_KEYS.get(k, k): v for k, v in data.items()}
        if not data.get("type") or not data.get("path"):
            raise ValidationError("Import entry needs both type and path")
        refresh = RefreshOptions.from_dict(data.get("refreshOptions"))
        return cls(
            type=_parse_type(data["type"]),
            path=str(data["path"]),
            tag=str(data.get("tag") or ""),
            method=str(data.get("method") or "").upper(),
            request_options=RequestOptions.from_dict(data.get("requestOptions")),
            refresh_options=RefreshOptions(interval=refresh.interval),
            json_filter=JsonFilter.from_dict(data.get("jsonFilter")),
        )
