# opd_agents/templates.py
from __future__ import annotations

import re
from typing import Any, List, Mapping

_PLACEHOLDER = re.compile(r"\{\{([^{}]+)\}\}")


def render_template(template: str, variables: Mapping[str, Any]) -> str:
    """
    Replace every {{key}} whose key is in `variables`.
    Unknown keys stay as literal text; substituted values are not re-scanned.
    """
    variables = variables or {}

    def _sub(m: "re.Match[str]") -> str:
        key = m.group(1)
        if key in variables:
            return str(variables[key])
        return m.group(0)

    return _PLACEHOLDER.sub(_sub, template or "")


def template_placeholders(template: str) -> List[str]:
    seen: List[str] = []
    for m in _PLACEHOLDER.finditer(template or ""):
        if m.group(1) not in seen:
            seen.append(m.group(1))
    return seen
