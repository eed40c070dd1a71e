"""Response Normalizer - Converts httpx responses and failures to ExecutionResponse."""

from __future__ import annotations

import base64
import codecs

import httpx

from api_workbench.models import ErrorKind, ExecutionResponse, Header, PreparedRequest

# Content types whose bodies are kept as text even outside text/*
_TEXTUAL_MARKERS = ("json", "xml", "javascript", "x-www-form-urlencoded", "yaml", "graphql")


def normalize_response(
    response: httpx.Response,
    content: bytes,
    request: PreparedRequest,
    elapsed_ms: int,
) -> ExecutionResponse:
    """Build a successful ExecutionResponse from a received HTTP response.

    Args:
        response: The httpx response (status line and headers).
        content: The full body as received. Passed separately because the
                 executor streams the body.
        request: The request that produced this response.
        elapsed_ms: Dispatch to full receipt, in milliseconds.
    """
    content_type = response.headers.get("content-type")
    body, body_encoding = _decode_body(content, content_type, response.charset_encoding)

    return ExecutionResponse(
        status_code=response.status_code,
        status_text=response.reason_phrase or None,
        body=body,
        body_encoding=body_encoding,
        body_size=len(content),
        content_type=content_type,
        headers=tuple(Header(key=k, value=v) for k, v in response.headers.multi_items()),
        response_time_ms=elapsed_ms,
        request_url=request.url,
        request_method=request.method.value,
        success=True,
        protocol=response.http_version,
    )


def failure_response(
    request: PreparedRequest,
    error_type: ErrorKind,
    error_message: str,
    elapsed_ms: int,
) -> ExecutionResponse:
    """Build a failed ExecutionResponse: no response was obtained."""
    return ExecutionResponse(
        status_code=None,
        body=None,
        body_size=0,
        response_time_ms=elapsed_ms,
        request_url=request.url,
        request_method=request.method.value,
        success=False,
        error_message=error_message,
        error_type=error_type,
    )


def is_textual_content_type(content_type: str | None) -> bool:
    if not content_type:
        return False
    lowered = content_type.lower()
    return lowered.startswith("text/") or any(marker in lowered for marker in _TEXTUAL_MARKERS)


def _decode_body(
    content: bytes, content_type: str | None, charset: str | None
) -> tuple[str | None, str]:
    """Return (body, encoding) where encoding is 'text' or 'base64'.

    Text content types are decoded with the declared charset (undecodable
    bytes replaced). Without a content type the body is kept as text only if
    it is valid UTF-8. Everything else is base64.
    """
    if not content:
        return None, "text"

    if is_textual_content_type(content_type):
        return content.decode(_known_codec(charset), errors="replace"), "text"

    if not content_type:
        try:
            return content.decode("utf-8"), "text"
        except UnicodeDecodeError:
            pass

    return base64.b64encode(content).decode("ascii"), "base64"


def _known_codec(charset: str | None) -> str:
    if charset:
        try:
            codecs.lookup(charset)
            return charset
        except LookupError:
            pass
    return "utf-8"
