"""
Template rendering for instance bootstrap payloads.
"""

import hashlib
import re
from typing import Any, Mapping

from .errors import MissingVariable

# ``$${name}`` is an escaped, literal ``${name}``.
PLACEHOLDER = re.compile(r"(\$?)\$\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}")


def template_variables(body: str) -> set:
    """Return the names of all unescaped placeholders in a template."""
    return {match.group(2) for match in PLACEHOLDER.finditer(body) if not match.group(1)}


def render_template(body: str, variables: Mapping[str, Any]) -> str:
    """
    Substitute every ``${name}`` placeholder in a template.

    Args:
        body: Template text
        variables: Values by placeholder name

    Returns:
        Rendered payload

    Raises:
        MissingVariable: One or more placeholders have no value; nothing is rendered
    """
    missing = [name for name in template_variables(body) if name not in variables]
    if missing:
        raise MissingVariable(missing)

    def substitute(match):
        if match.group(1):
            return match.group(0)[1:]
        return str(variables[match.group(2)])

    return PLACEHOLDER.sub(substitute, body)


def template_hash(payload: str) -> str:
    """Content identity of a rendered payload."""
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
