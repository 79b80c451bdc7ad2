from __future__ import annotations

import json
import re
from typing import Any, Mapping

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (list, dict)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def render_template(template: str, context: Mapping[str, Any]) -> str:
    """Substitute ``{{name}}`` placeholders; unknown names render empty."""
    if not template:
        return ""
    return _PLACEHOLDER.sub(lambda m: _stringify(context.get(m.group(1))), template)
