"""
Document loading for the retrieval index.

Reads plain text, markdown, JSON and CSV files into text that can be
ingested, along with simple size metadata.
"""

from __future__ import annotations

import csv
import io
import json
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Union


TEXT_SUFFIXES = (".txt", ".md", ".markdown")


class UnsupportedDocumentError(ValueError):
    """The file type cannot be turned into indexable text."""


@dataclass(frozen=True)
class LoadedDocument:
    name: str
    kind: str  # "text" | "json" | "csv"
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def index_metadata(self) -> Dict[str, Any]:
        """Metadata attached to every fragment of this document."""
        return {"source": self.name, "kind": self.kind, **self.metadata}


def text_metadata(content: str) -> Dict[str, int]:
    return {
        "word_count": len(content.split()),
        "character_count": len(content),
        "line_count": len(content.split("\n")),
    }


def render_json(raw: str) -> str:
    """Pretty-printed JSON; the raw text if it does not parse."""
    try:
        return json.dumps(json.loads(raw), indent=2, ensure_ascii=False)
    except json.JSONDecodeError:
        return raw


def render_csv(raw: str) -> str:
    """
    One line per row as "header: value" pairs.

    Rows end with a period so each row becomes its own sentence when the
    document is chunked.
    """
    rows = list(csv.reader(io.StringIO(raw)))
    if not rows:
        return ""
    headers = [h.strip() for h in rows[0]]
    lines = [f"CSV with {len(rows) - 1} rows and {len(headers)} columns: {', '.join(headers)}."]
    for row in rows[1:]:
        if not any(cell.strip() for cell in row):
            continue
        pairs = [f"{h}: {v.strip()}" for h, v in zip(headers, row)]
        lines.append("; ".join(pairs) + ".")
    return "\n".join(lines)


def load_document(path: Union[str, Path]) -> LoadedDocument:
    path = Path(path)
    suffix = path.suffix.lower()
    raw = path.read_text(encoding="utf-8")

    if suffix in TEXT_SUFFIXES:
        kind, content = "text", raw
    elif suffix == ".json":
        kind, content = "json", render_json(raw)
    elif suffix == ".csv":
        kind, content = "csv", render_csv(raw)
    else:
        raise UnsupportedDocumentError(f"Unsupported file type: {suffix or path.name}")

    return LoadedDocument(name=path.name, kind=kind, content=content, metadata=text_metadata(content))


def key_topics(content: str, limit: int = 5) -> List[str]:
    """Most frequent words longer than four letters."""
    cleaned = "".join(ch if ch.isalnum() or ch.isspace() else " " for ch in content.lower())
    words = [w for w in cleaned.split() if len(w) > 4]
    return [word for word, _ in Counter(words).most_common(limit)]


def summarize(document: LoadedDocument) -> str:
    """One-sentence description of a loaded document."""
    word_count = document.metadata.get("word_count", 0)
    if word_count < 50:
        return f"A short {document.kind} document with {word_count} words."
    topics = ", ".join(key_topics(document.content))
    return (
        f"A {document.kind} document with {word_count} words across "
        f"{document.metadata.get('line_count', 0)} lines. Key topics: {topics}."
    )
