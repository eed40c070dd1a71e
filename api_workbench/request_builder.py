"""Request Builder - Assembles a fully resolved PreparedRequest.

Takes a stored ApiRequest plus the active environment's variables, resolves
placeholders, applies auth, appends query parameters and picks the body and
content type. The result is immutable and carries everything the executor
and the history recorder need.
"""

from __future__ import annotations

import base64
import binascii
from typing import Mapping
from urllib.parse import urlencode

import httpx

from api_workbench.auth import apply_auth
from api_workbench.errors import InvalidRequestError
from api_workbench.models import (
    REDACTED,
    ApiRequest,
    AuthConfig,
    BodyType,
    PreparedRequest,
)
from api_workbench.variables import (
    find_unresolved,
    log_unresolved,
    resolve,
    resolve_body,
    resolve_headers,
    resolve_query_params,
)

_ALLOWED_SCHEMES = frozenset({"http", "https"})

# String fields of AuthConfig that may reference environment variables
_AUTH_TEMPLATE_FIELDS = (
    "bearer_token",
    "basic_username",
    "basic_password",
    "api_key",
    "api_key_header_name",
    "oauth2_access_token",
)


def build_request(
    definition: ApiRequest,
    variables: Mapping[str, str] | None = None,
    default_headers: Mapping[str, str] | None = None,
) -> PreparedRequest:
    """Resolve and assemble a request definition into a PreparedRequest.

    Args:
        definition: The stored request definition.
        variables: Enabled environment variables (name -> value).
        default_headers: Headers added only when the request does not set them.

    Returns:
        Immutable PreparedRequest.

    Raises:
        InvalidRequestError: If the resolved URL is not an absolute http(s) URL,
            or a binary body is not valid base64.
        AuthConfigurationError: If the auth kind is missing required fields.
    """
    variables = variables or {}

    url = (resolve(definition.url, variables) or "").strip()
    log_unresolved("url", url)
    _validate_url(url)

    headers = resolve_headers(list(definition.headers), variables)
    params = resolve_query_params(list(definition.query_params), variables)

    auth_config = _resolve_auth_config(definition.auth_config, variables)
    auth = apply_auth(definition.auth_type, auth_config, headers, params)

    header_pairs = [(h.key, h.value) for h in auth.headers]
    param_pairs = [(p.key, p.value) for p in auth.query_params]
    # Strategies only append, so credentials sit after the caller's entries
    credential_headers = frozenset(range(len(headers), len(header_pairs)))
    credential_params = frozenset(range(len(params), len(param_pairs)))

    for name, value in (default_headers or {}).items():
        if not _has_header(header_pairs, name):
            header_pairs.append((name, value))

    body = _build_body(definition, variables)

    content_type = _first_header(header_pairs, "content-type")
    if body is not None and content_type is None and definition.body_type != BodyType.NONE:
        content_type = definition.body_type.content_type
        header_pairs.append(("Content-Type", content_type))

    masked_url = None
    if credential_params:
        masked_pairs = [
            (key, REDACTED if i in credential_params else value)
            for i, (key, value) in enumerate(param_pairs)
        ]
        masked_url = _append_query(url, masked_pairs)

    return PreparedRequest(
        method=definition.method,
        url=_append_query(url, param_pairs),
        masked_url=masked_url,
        credential_headers=credential_headers,
        credential_params=credential_params,
        headers=tuple(header_pairs),
        query_params=tuple(param_pairs),
        body=body,
        content_type=content_type,
        body_type=definition.body_type,
        auth_type=definition.auth_type,
        auth_config=auth_config.redacted() if auth_config is not None else {},
        request_id=definition.id,
        request_name=definition.name,
        collection_id=definition.collection_id,
    )


def _validate_url(url: str) -> None:
    """Raise InvalidRequestError unless url is an absolute http(s) URL with a host."""
    if not url:
        raise InvalidRequestError("Request URL is empty")
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, ValueError) as e:
        raise InvalidRequestError(f"Malformed URL '{url}': {e}") from e

    if parsed.scheme not in _ALLOWED_SCHEMES:
        unresolved = find_unresolved(url)
        hint = f" (unresolved variables: {', '.join(unresolved)})" if unresolved else ""
        raise InvalidRequestError(f"URL must be absolute http(s), got '{url}'{hint}")
    if not parsed.host or find_unresolved(parsed.host):
        raise InvalidRequestError(f"URL has no valid host: '{url}'")


def _append_query(url: str, params: list[tuple[str, str]]) -> str:
    """Append params to url, keeping any existing query string and fragment."""
    if not params:
        return url
    base, sep, fragment = url.partition("#")
    if "?" not in base:
        joiner = "?"
    elif base.endswith(("?", "&")):
        joiner = ""
    else:
        joiner = "&"
    result = f"{base}{joiner}{urlencode(params)}"
    return f"{result}#{fragment}" if sep else result


def _build_body(definition: ApiRequest, variables: Mapping[str, str]) -> str | bytes | None:
    """Body is sent only when the method supports one and the payload is non-empty."""
    if not definition.has_body:
        return None

    body = resolve_body(definition.body, definition.body_type, variables)
    if definition.body_type == BodyType.BINARY:
        # Binary payloads are stored base64-encoded
        try:
            return base64.b64decode(body or "", validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidRequestError(f"Binary body is not valid base64: {e}") from e
    return body


def _resolve_auth_config(
    config: AuthConfig | None, variables: Mapping[str, str]
) -> AuthConfig | None:
    if config is None or not variables:
        return config
    updates = {}
    for name in _AUTH_TEMPLATE_FIELDS:
        value = getattr(config, name)
        if value:
            resolved = resolve(value, variables)
            if resolved != value:
                updates[name] = resolved
    return config.model_copy(update=updates) if updates else config


def _has_header(pairs: list[tuple[str, str]], name: str) -> bool:
    return _first_header(pairs, name) is not None


def _first_header(pairs: list[tuple[str, str]], name: str) -> str | None:
    lowered = name.lower()
    for key, value in pairs:
        if key.lower() == lowered:
            return value
    return None
