"""Variable Resolver - Substitutes {{name}} placeholders from an environment.

Resolution is best-effort: a reference to a name missing from the mapping is
left verbatim. Substitution is a single pass, so a substituted value that
itself looks like a reference is never expanded.
"""

from __future__ import annotations

import logging
import re
from typing import Mapping

from api_workbench.models import BodyType, Header, QueryParam

logger = logging.getLogger(__name__)

# {{name}} with optional whitespace inside the braces
_VARIABLE_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")


def resolve(template: str | None, variables: Mapping[str, str]) -> str | None:
    """Replace every resolvable {{name}} reference in template."""
    if not template or not variables:
        return template

    def replacer(match: re.Match) -> str:
        name = match.group(1)
        if name in variables:
            return variables[name]
        return match.group(0)

    return _VARIABLE_PATTERN.sub(replacer, template)


def find_unresolved(text: str | None) -> list[str]:
    """Names of references still present in text, in order of appearance."""
    if not text:
        return []
    return [m.group(1) for m in _VARIABLE_PATTERN.finditer(text)]


def resolve_headers(headers: list[Header], variables: Mapping[str, str]) -> list[Header]:
    """Resolve values of enabled headers. Disabled headers are dropped."""
    return [
        Header(key=h.key, value=resolve(h.value, variables), enabled=True)
        for h in headers
        if h.enabled
    ]


def resolve_query_params(
    params: list[QueryParam], variables: Mapping[str, str]
) -> list[QueryParam]:
    """Resolve values of enabled query params. Disabled params are dropped."""
    return [
        QueryParam(key=p.key, value=resolve(p.value, variables), enabled=True)
        for p in params
        if p.enabled
    ]


def resolve_body(
    body: str | None, body_type: BodyType, variables: Mapping[str, str]
) -> str | None:
    """Resolve the body only for textual body kinds; binary bodies pass through."""
    if body_type.is_textual:
        return resolve(body, variables)
    return body


def log_unresolved(label: str, text: str | None) -> None:
    missing = find_unresolved(text)
    if missing:
        logger.debug("Unresolved variables in %s: %s", label, ", ".join(missing))
