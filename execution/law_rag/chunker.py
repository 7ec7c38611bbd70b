"""
Statute Chunker for gii-norm XML

Splits federal law XML dumps (one file per law, one <norm> element per
paragraph/article) into bounded text chunks ready for embedding.

Each <norm> record yields zero, one or many chunks:
- law_code: <jurabk>, else <amtabk>, else the file name
- section_label: <enbez>, else the structural heading, else <titel>
- title: <titel>, else <langue>
- body_text: the record's text fragments, markup stripped and whitespace
  collapsed, split greedily at whitespace so no chunk exceeds max_chars
"""

import re
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Optional, Union

from .language_patterns import HTML_ENTITIES

logger = logging.getLogger(__name__)

_NORM_BLOCK = re.compile(r"<norm\b[\s\S]*?</norm>", re.IGNORECASE)
_CDATA = re.compile(r"<!\[CDATA\[([\s\S]*?)\]\]>")
_TAG = re.compile(r"<[^>]+>")
_ENTITY = re.compile("|".join(re.escape(e) for e in HTML_ENTITIES), re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")

# Body fragments in order of preference. <text> wraps <Content> which wraps
# <P>, so only the first tag that is present is read.
_BODY_TAGS = ("text", "Content", "P")


@dataclass
class NormRecord:
    """One <norm> element reduced to the fields the corpus stores."""
    law_code: str
    section_label: Optional[str]
    title: Optional[str]
    body_text: str
    origin_path: str


@dataclass
class LawChunk:
    """A bounded excerpt of statutory text tied to a law code and version."""
    law_code: str
    section_label: Optional[str]
    title: Optional[str]
    body_text: str
    origin_path: str
    version_tag: Optional[str] = None
    embedding: Optional[list[float]] = None
    chunk_id: Optional[int] = None  # assigned by the store (BIGSERIAL)

    def to_dict(self) -> dict:
        return {
            "chunk_id": self.chunk_id,
            "law_code": self.law_code,
            "section_label": self.section_label,
            "title": self.title,
            "body_text": self.body_text,
            "origin_path": self.origin_path,
            "version_tag": self.version_tag,
        }


@dataclass
class ChunkConfig:
    """Configuration for chunking parameters."""
    max_chars: int = 1800
    # Below this share of the window a whitespace cut is abandoned for a hard cut
    hard_break_ratio: float = 0.6


def strip_markup(text: str) -> str:
    """Unwrap CDATA, drop tags, decode the standard entities, collapse whitespace."""
    if not text:
        return ""
    text = _CDATA.sub(r"\1", text)
    text = _TAG.sub(" ", text)
    text = _ENTITY.sub(lambda m: HTML_ENTITIES[m.group(0).lower()], text)
    return _WHITESPACE.sub(" ", text).strip()


def split_text(text: str, max_chars: int, hard_break_ratio: float = 0.6) -> list[str]:
    """
    Split text greedily into pieces of at most max_chars characters.

    Cuts at the last space at or before max_chars. When that space lies before
    hard_break_ratio * max_chars (or there is none) the piece is cut at exactly
    max_chars instead.
    """
    if max_chars <= 0:
        raise ValueError(f"max_chars must be positive, got {max_chars}")

    pieces = []
    rest = text.strip()
    min_cut = int(max_chars * hard_break_ratio)

    while len(rest) > max_chars:
        cut = rest.rfind(" ", 0, max_chars + 1)
        if cut < min_cut or cut <= 0:
            cut = max_chars
        piece = rest[:cut].strip()
        if piece:
            pieces.append(piece)
        rest = rest[cut:].strip()

    if rest:
        pieces.append(rest)
    return pieces


def _tag_pattern(tag: str) -> re.Pattern:
    return re.compile(rf"<{tag}\b[^>]*>([\s\S]*?)</{tag}>", re.IGNORECASE)


def _first_text(block: str, *tags: str) -> str:
    """Return the stripped text of the first tag in ``tags`` that has content."""
    for tag in tags:
        match = _tag_pattern(tag).search(block)
        if match:
            value = strip_markup(match.group(1))
            if value:
                return value
    return ""


def _all_text(block: str, tag: str) -> list[str]:
    values = (strip_markup(m) for m in _tag_pattern(tag).findall(block))
    return [v for v in values if v]


def parse_norm_records(xml: str, source_path: str) -> list[NormRecord]:
    """
    Parse the <norm> elements of a gii-norm XML document.

    Records without any body text are skipped since they carry no citable text.

    Args:
        xml: Raw XML document
        source_path: Path of the file the XML was read from

    Returns:
        NormRecord list in document order
    """
    fallback_law = Path(source_path).stem
    records = []

    for block in _NORM_BLOCK.findall(xml):
        fragments = []
        for tag in _BODY_TAGS:
            fragments = _all_text(block, tag)
            if fragments:
                break
        body = strip_markup(" ".join(fragments))
        if not body:
            continue

        records.append(NormRecord(
            law_code=_first_text(block, "jurabk", "amtabk") or fallback_law or "UNKNOWN",
            section_label=_first_text(
                block, "enbez", "gliederungsbez", "gliederungseinheit", "titel"
            ) or None,
            title=_first_text(block, "titel", "langue") or None,
            body_text=body,
            origin_path=source_path,
        ))

    return records


def find_xml_files(directory: Union[str, Path]) -> list[Path]:
    """Recursively list *.xml files below directory in a stable order."""
    root = Path(directory)
    if not root.is_dir():
        raise FileNotFoundError(f"Law XML directory not found: {root}")
    return sorted(p for p in root.rglob("*") if p.is_file() and p.suffix.lower() == ".xml")


class LawChunker:
    """
    Turns norm records into size-bounded chunks.

    Splitting is local to each record, so the chunks of one paragraph never
    depend on the rest of the corpus.
    """

    def __init__(self, config: Optional[ChunkConfig] = None):
        self.config = config or ChunkConfig()

    def chunk(self, records: list[NormRecord], version_tag: Optional[str] = None) -> list[LawChunk]:
        chunks = []
        for record in records:
            for piece in split_text(
                record.body_text, self.config.max_chars, self.config.hard_break_ratio
            ):
                chunks.append(LawChunk(
                    law_code=record.law_code,
                    section_label=record.section_label,
                    title=record.title,
                    body_text=piece,
                    origin_path=record.origin_path,
                    version_tag=version_tag,
                ))
        return chunks

    def chunk_xml(self, xml: str, source_path: str, version_tag: Optional[str] = None) -> list[LawChunk]:
        return self.chunk(parse_norm_records(xml, source_path), version_tag=version_tag)

    def chunk_file(self, path: Union[str, Path], version_tag: Optional[str] = None) -> list[LawChunk]:
        """Read and chunk one XML file."""
        path = Path(path)
        xml = path.read_text(encoding="utf-8")
        chunks = self.chunk_xml(xml, str(path), version_tag=version_tag)
        logger.info(f"Chunked {path.name}: {len(chunks)} chunks")
        return chunks
