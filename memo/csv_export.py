"""CSV encoding for note exports."""

from __future__ import annotations

import csv
import io
from collections.abc import Mapping, Sequence
from typing import Any


def to_csv(rows: Sequence[Mapping[str, Any]]) -> str:
    """Render rows as CSV text.

    The header comes from the first row's keys. Fields containing a comma,
    quote, CR or LF are quoted with internal quotes doubled. Rows are joined
    with ``\\n`` and there is no trailing newline. No rows gives ``""``.
    """
    if not rows:
        return ""
    headers = list(rows[0].keys())
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n", quoting=csv.QUOTE_MINIMAL)
    writer.writerow(headers)
    for row in rows:
        writer.writerow(["" if row.get(h) is None else str(row.get(h)) for h in headers])
    return buffer.getvalue()[:-1]
