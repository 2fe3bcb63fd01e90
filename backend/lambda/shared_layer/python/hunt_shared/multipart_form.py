"""hunt_shared.multipart_form — multipart/form-data parsing for API Gateway events."""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from python_multipart import MultipartParser
from python_multipart.exceptions import FormParserError
from python_multipart.multipart import parse_options_header

from hunt_shared import config
from hunt_shared.errors import PayloadTooLargeError, ValidationError
from hunt_shared.http_utils import _header, _raw_body

__all__ = [
    "MultipartForm",
    "UploadedFile",
    "parse_multipart_event",
]


@dataclass(frozen=True)
class UploadedFile:
    field_name: str
    file_name: str
    data: bytes
    content_type: str


@dataclass
class MultipartForm:
    fields: Dict[str, str] = field(default_factory=dict)
    files: Dict[str, UploadedFile] = field(default_factory=dict)

    def value(self, name: str) -> str:
        return self.fields.get(name, "").strip()


def _text(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return str(raw)


class _PartCollector:
    """Callbacks for ``MultipartParser``; one part's headers and bytes at a time."""

    def __init__(self, form: MultipartForm) -> None:
        self.form = form
        self._headers: List[Tuple[bytes, bytes]] = []
        self._header_field = b""
        self._header_value = b""
        self._data: List[bytes] = []

    def callbacks(self) -> Dict[str, Any]:
        return {
            "on_part_begin": self.on_part_begin,
            "on_header_field": self.on_header_field,
            "on_header_value": self.on_header_value,
            "on_header_end": self.on_header_end,
            "on_part_data": self.on_part_data,
            "on_part_end": self.on_part_end,
        }

    def on_part_begin(self) -> None:
        self._headers = []
        self._header_field = b""
        self._header_value = b""
        self._data = []

    def on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._header_field += data[start:end]

    def on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._header_value += data[start:end]

    def on_header_end(self) -> None:
        self._headers.append((self._header_field.strip().lower(), self._header_value.strip()))
        self._header_field = b""
        self._header_value = b""

    def on_part_data(self, data: bytes, start: int, end: int) -> None:
        self._data.append(data[start:end])

    def on_part_end(self) -> None:
        headers = dict(self._headers)
        _, options = parse_options_header(headers.get(b"content-disposition", b""))
        name = _text(options.get(b"name"))
        if not name:
            return
        data = b"".join(self._data)
        if b"filename" not in options:
            self.form.fields[name] = _text(data)
            return

        file_name = _text(options.get(b"filename"))
        part_type, _ = parse_options_header(headers.get(b"content-type", b""))
        content_type = _text(part_type)
        if not content_type:
            content_type = mimetypes.guess_type(file_name)[0] or "application/octet-stream"
        self.form.files[name] = UploadedFile(
            field_name=name,
            file_name=file_name,
            data=data,
            content_type=content_type,
        )


def parse_multipart_event(event: Dict[str, Any], *, max_bytes: Optional[int] = None) -> MultipartForm:
    """Parse the event body into text fields and in-memory files.

    The whole body counts against ``max_bytes`` (default ``MAX_UPLOAD_BYTES``).
    When a field repeats, the last value wins. A file's content type comes
    from its part header; the file name is only consulted when the header is
    missing.
    """
    limit = int(max_bytes if max_bytes is not None else config.MAX_UPLOAD_BYTES)
    content_type = _header(event, "content-type")
    if "multipart/form-data" not in content_type.lower():
        raise ValidationError("Content-Type must be multipart/form-data")
    _, params = parse_options_header(content_type)
    boundary = params.get(b"boundary")
    if not boundary:
        raise ValidationError("Multipart boundary not found")

    try:
        body = _raw_body(event)
    except (ValueError, TypeError) as exc:
        raise ValidationError(f"Request body could not be decoded: {exc}") from exc
    if len(body) > limit:
        raise PayloadTooLargeError(
            f"Please upload a smaller image (max {limit // (1024 * 1024)}MB)",
            maxBytes=limit,
        )
    if not body:
        raise ValidationError("No multipart data found")

    form = MultipartForm()
    collector = _PartCollector(form)
    try:
        parser = MultipartParser(boundary, collector.callbacks())
        parser.write(body)
        parser.finalize()
    except FormParserError as exc:
        raise ValidationError(f"Malformed multipart body: {exc}") from exc

    if not form.fields and not form.files:
        raise ValidationError("No multipart data found")
    return form
