"""Placeholder expansion for copy command templates.

Templates reference ``%NAME%`` placeholders:

- ``%SOURCEITEM%``: the copy item's path on the source host
- ``%DESTINATIONITEM%``: the same path as seen from a destination host
- ``%CURRENTDATE%``: timestamp taken once per item (``2025-01-15_103000``).
  The time part is ``HHMMSS`` with minutes in the middle. Legacy scripts
  documented it as ``yyyy-MM-dd_HHMMss``, whose ``MM`` would be the month.
- ``%CURRENTYEAR%``: four digit year of that timestamp
- ``%DESTSERVER%``: destination host name, resolved per destination

Templates are tokenised with shlex before expansion, so substituted values
are never re-split or interpreted by a shell. Quotes group words, but a
backslash is an ordinary character, so ``/LOG:c:\\logs\\copy.log`` and
``\\\\%DESTSERVER%\\backup`` reach the copy program as written.
"""

from __future__ import annotations

import re
import shlex
from collections.abc import Mapping
from datetime import datetime

from serversync.models import CopyItemSpec

__all__ = [
    "CURRENTDATE_FORMAT",
    "DESTSERVER",
    "destination_item",
    "expand_tokens",
    "expand_variables",
    "item_variables",
    "split_template",
]

DESTSERVER = "DESTSERVER"
CURRENTDATE_FORMAT = "%Y-%m-%d_%H%M%S"

_DRIVE_PATH = re.compile(r"^[A-Za-z]:")


def expand_variables(template: str, mapping: Mapping[str, str]) -> str:
    """Replace every ``%key%`` in template with its value from mapping.

    Keys are matched literally and case-sensitively. Placeholders without a
    key are left as they are. Substitution is a single pass: placeholder text
    inside a replacement value is not expanded again.
    """
    if not mapping:
        return template
    pattern = re.compile("%(" + "|".join(re.escape(key) for key in mapping) + ")%")
    return pattern.sub(lambda match: mapping[match.group(1)], template)


def expand_tokens(tokens: list[str], mapping: Mapping[str, str]) -> list[str]:
    return [expand_variables(token, mapping) for token in tokens]


def split_template(template: str) -> list[str]:
    """Split a command template into argv tokens.

    Raises:
        ValueError: If the template has unbalanced quotes or no tokens at all
    """
    lexer = shlex.shlex(template, posix=True)
    lexer.whitespace_split = True
    lexer.commenters = ""
    # Windows paths: backslashes are literal, not escapes
    lexer.escape = ""
    tokens = list(lexer)
    if not tokens:
        raise ValueError("Command template is empty")
    return tokens


def destination_item(path: str) -> str:
    """Build the destination-side path template for a source path.

    Drive-letter paths use the administrative share convention
    (``c:\\dir`` -> ``\\\\%DESTSERVER%\\c$\\dir``). Anything else becomes a
    remote-shell path (``/srv/www`` -> ``%DESTSERVER%:/srv/www``).
    """
    if _DRIVE_PATH.match(path):
        return f"\\\\%{DESTSERVER}%\\" + path.replace(":", "$", 1)
    return f"%{DESTSERVER}%:{path}"


def item_variables(item: CopyItemSpec, now: datetime) -> dict[str, str]:
    """Per-item placeholder mapping. Every destination of the item shares now."""
    return {
        "SOURCEITEM": item.path,
        "DESTINATIONITEM": destination_item(item.path),
        "CURRENTYEAR": now.strftime("%Y"),
        "CURRENTDATE": now.strftime(CURRENTDATE_FORMAT),
    }
