import re
from typing import Optional

from .models import Verdict

_TOKEN_RE = re.compile(r"(SHIP|REVISE)")


def normalize(raw_text: Optional[str]) -> Verdict:
    """Reduce free-form reviewer output to a verdict.

    Only the first line is considered. The earliest `SHIP` or `REVISE` token
    (case-insensitive, anywhere in that line) wins; anything else is REVISE.
    """
    if not raw_text:
        return Verdict.REVISE
    first_line = raw_text.splitlines()[0]
    match = _TOKEN_RE.search(first_line.upper())
    if match and match.group(1) == Verdict.SHIP.value:
        return Verdict.SHIP
    return Verdict.REVISE
