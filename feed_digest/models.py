from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .utils import format_instant, parse_instant


@dataclass(frozen=True)
class Source:
    name: str
    endpoint: str


@dataclass(frozen=True)
class Entry:
    source_name: str
    title: str
    link: str
    raw_body: str
    published_at: datetime


@dataclass(frozen=True)
class ParagraphDigest:
    index: int
    title: str
    summary: str


@dataclass(frozen=True)
class ExtendedContentMeta:
    ok: bool
    word_count: int
    error: str | None = None


@dataclass(frozen=True)
class DigestLayers:
    paragraphs: tuple[ParagraphDigest, ...] = ()
    section: str = ""
    overall: str = ""
    one_line: str = ""


@dataclass(frozen=True)
class Digest:
    fingerprint: str
    title: str
    link: str
    source_name: str
    published_at: datetime
    extended_content: ExtendedContentMeta
    layers: DigestLayers = field(default_factory=DigestLayers)

    def to_dict(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "title": self.title,
            "link": self.link,
            "source_name": self.source_name,
            "published_at": format_instant(self.published_at),
            "extended_content": {
                "ok": self.extended_content.ok,
                "word_count": self.extended_content.word_count,
                "error": self.extended_content.error,
            },
            "layers": {
                "paragraphs": [
                    {"index": p.index, "title": p.title, "summary": p.summary}
                    for p in self.layers.paragraphs
                ],
                "section": self.layers.section,
                "overall": self.layers.overall,
                "one_line": self.layers.one_line,
            },
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Digest:
        meta = payload["extended_content"]
        layers = payload["layers"]
        return cls(
            fingerprint=payload["fingerprint"],
            title=payload["title"],
            link=payload["link"],
            source_name=payload["source_name"],
            published_at=parse_instant(payload["published_at"]),
            extended_content=ExtendedContentMeta(
                ok=bool(meta["ok"]),
                word_count=int(meta["word_count"]),
                error=meta.get("error"),
            ),
            layers=DigestLayers(
                paragraphs=tuple(
                    ParagraphDigest(index=int(p["index"]), title=p["title"], summary=p["summary"])
                    for p in layers.get("paragraphs", [])
                ),
                section=layers.get("section", ""),
                overall=layers.get("overall", ""),
                one_line=layers.get("one_line", ""),
            ),
        )


@dataclass(frozen=True)
class PublishedEntry:
    id: str
    title: str
    link: str
    published_at: datetime | None
    description: str = ""
