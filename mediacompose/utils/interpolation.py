"""``{{ name }}`` placeholder substitution for descriptor strings.

Usage:
    from mediacompose.utils.interpolation import interpolate

    interpolate("{{ videoSample }}", {"videoSample": "https://cdn/x.mp4"})
"""

import logging
import re
from collections.abc import Mapping

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{\{\s*([\w.-]+)\s*\}\}")


def interpolate(text: str, *scopes: Mapping[str, str | list[str]]) -> str:
    """Replace placeholders using the first scope that defines each name.

    List values are joined with a comma. Unknown names are left as-is.
    """

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        for scope in scopes:
            if key in scope:
                value = scope[key]
                return ",".join(value) if isinstance(value, list) else str(value)
        logger.warning(f"[Interpolate] Unknown variable '{key}'")
        return match.group(0)

    return PLACEHOLDER.sub(_replace, text)
