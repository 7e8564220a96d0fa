from __future__ import annotations

from dataclasses import asdict, dataclass

FOOTER_HEADER = "\n\n---\nSources:\n"


@dataclass
class Citation:
    url: str
    title: str | None
    start_index: int
    end_index: int

    def to_dict(self) -> dict:
        return asdict(self)


def format_citation_footer(citations: list[Citation]) -> str:
    """Render ``[n] title: url`` lines, 1-indexed in arrival order. Empty when no citations."""
    if not citations:
        return ""
    lines = [
        f"[{position}] {citation.title or citation.url}: {citation.url}\n"
        for position, citation in enumerate(citations, start=1)
    ]
    return FOOTER_HEADER + "".join(lines)
