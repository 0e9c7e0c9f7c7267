from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class KnowledgeResult:
    found: bool
    content: str = ""
    sources: tuple[str, ...] = ()

    @staticmethod
    def empty() -> KnowledgeResult:
        return KnowledgeResult(found=False)


class KnowledgeSource(Protocol):
    """A pluggable knowledge-base lookup. Search strategy is up to the source."""

    def lookup(self, keywords: Sequence[str]) -> KnowledgeResult: ...


class InMemoryKnowledgeBase:
    """Topic -> content entries matched by case-insensitive keyword."""

    def __init__(self, entries: Mapping[str, str] | None = None) -> None:
        self._entries = {k.lower(): v for k, v in (entries or {}).items()}

    def add(self, topic: str, content: str) -> None:
        self._entries[topic.lower()] = content

    def lookup(self, keywords: Sequence[str]) -> KnowledgeResult:
        wanted = [k.lower() for k in keywords if k.strip()]
        hits = [(topic, content) for topic, content in self._entries.items() if topic in wanted]
        if not hits:
            return KnowledgeResult.empty()
        return KnowledgeResult(
            found=True,
            content="\n\n".join(content for _, content in hits),
            sources=tuple(topic for topic, _ in hits),
        )


class DirectoryKnowledgeBase:
    """Searches text documents under a directory for any of the keywords.

    Only `*.md` and `*.txt` files are considered. A document matches when it
    mentions at least one keyword (case-insensitive).
    """

    suffixes: tuple[str, ...] = (".md", ".txt")

    def __init__(self, root: Path, *, max_documents: int = 5) -> None:
        self._root = root
        self._max_documents = max_documents

    def lookup(self, keywords: Sequence[str]) -> KnowledgeResult:
        wanted = [k.lower() for k in keywords if k.strip()]
        if not wanted or not self._root.is_dir():
            return KnowledgeResult.empty()

        matches: list[tuple[Path, str]] = []
        for path in sorted(self._root.rglob("*")):
            if not path.is_file() or path.suffix.lower() not in self.suffixes:
                continue
            try:
                text = path.read_text(encoding="utf-8")
            except UnicodeDecodeError:
                logger.warning("Skipping undecodable knowledge document", extra={"path": str(path)})
                continue
            lowered = text.lower()
            if any(k in lowered for k in wanted):
                matches.append((path, text))
            if len(matches) >= self._max_documents:
                break

        if not matches:
            return KnowledgeResult.empty()
        return KnowledgeResult(
            found=True,
            content="\n\n".join(text.strip() for _, text in matches),
            sources=tuple(str(p.relative_to(self._root).as_posix()) for p, _ in matches),
        )
