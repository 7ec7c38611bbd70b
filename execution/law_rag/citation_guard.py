"""
Citation Guard for Statute References

Every norm reference in a generated answer must exist in the retrieved
evidence. The guard:
1. Extracts norm references (§ / Art. citations) with one regular grammar
2. Canonicalizes them ("§823 Absatz 1 BGB" -> "§ 823 Abs. 1 BGB")
3. Builds an allowlist from the evidence passed to the generator
4. Sanitizes the answer: allowed norms stay, looser forms of an allowed norm
   are upgraded to it, anything else is replaced by a neutral placeholder

Canonical form:
    [§|Art.] <number> [Abs. <n>] [Satz <n>] [Nr. <n>] [lit./Buchst. <x>] [<law code>]

Plural references ("§§ 823, 826 BGB") yield one canonical norm per item.
When any item is not allowed, the list is rewritten as single references.
"""

import re
import json
import logging
from dataclasses import dataclass, field, replace
from typing import Optional

from .language_config import LanguageConfig
from .language_patterns import LABELS

logger = logging.getLogger(__name__)

NORM_PATTERN = re.compile(
    r"""
    (?P<prefix>§|Art\.|Artikel)\s*
    (?P<number>\d+(?:[a-z](?![a-zäöüß]))?)
    (?:\s*(?:Absatz|Abs\.?)\s*(?P<abs>\d+(?:[a-z](?![a-zäöüß]))?))?
    (?:\s*Satz\s*(?P<satz>\d+))?
    (?:\s*(?:Nummer|Nr\.?)\s*(?P<nr>\d+(?:[a-z](?![a-zäöüß]))?))?
    (?:\s*(?P<lit_kind>Buchstabe|Buchst\.?|lit\.?)\s*(?P<lit>[a-z])\b)?
    (?:\s+(?P<law>
        [A-ZÄÖÜ][A-Za-zÄÖÜäöüß]*[A-ZÄÖÜ][A-Za-zÄÖÜäöüß]*\b   # at least two capitals
        (?:\s+(?:[IVX]{1,4}|\d{1,3})\b)?                     # SGB V, BImSchV 4
    ))?
    """,
    re.VERBOSE,
)

_WHITESPACE = re.compile(r"\s+")

# Plural references share one law code: "§§ 823, 826 BGB", "§§ 7 und 11 BUrlG".
# The whole list is one span; each item is a norm of its own.
_NUMBER = r"\d+(?:[a-z](?![a-zäöüß]))?"
_LAW_CODE = r"[A-ZÄÖÜ][A-Za-zÄÖÜäöüß]*[A-ZÄÖÜ][A-Za-zÄÖÜäöüß]*\b(?:\s+(?:[IVX]{1,4}|\d{1,3})\b)?"
_ITEM = (
    rf"{_NUMBER}"
    rf"(?:\s*(?:Absatz|Abs\.?)\s*{_NUMBER})?"
    r"(?:\s*Satz\s*\d+)?"
    rf"(?:\s*(?:Nummer|Nr\.?)\s*{_NUMBER})?"
)
_ITEM_SEPARATOR = r"\s*(?:,|\bund\b|\boder\b|\bsowie\b|\bbis\b)\s*"

PLURAL_NORM_PATTERN = re.compile(
    rf"§§\s*(?P<items>{_ITEM}(?:{_ITEM_SEPARATOR}{_ITEM})*)(?:\s+(?P<law>{_LAW_CODE}))?"
)
_ITEM_SPLIT = re.compile(_ITEM_SEPARATOR)


@dataclass(frozen=True)
class NormMention:
    """One norm reference found in a text."""
    start: int
    end: int
    raw: str
    canonical: str
    head: str  # "§ 823" / "Art. 6"
    law_code: Optional[str]


@dataclass
class NormReplacement:
    from_norm: str
    to_norm: str

    def to_dict(self) -> dict:
        return {"from": self.from_norm, "to": self.to_norm}


@dataclass
class NormAllowlist:
    """Norms citable in an answer, each with the ids of the sources containing it."""
    norm_sources: dict[str, list[str]] = field(default_factory=dict)

    @property
    def allowed_norms(self) -> list[str]:
        return list(self.norm_sources)

    @property
    def allowed_norms_text(self) -> str:
        return "\n".join(self.norm_sources)

    @property
    def norm_sources_text(self) -> str:
        return "\n".join(f"{norm} -> {', '.join(ids)}" for norm, ids in self.norm_sources.items())

    def __contains__(self, norm: str) -> bool:
        return norm in self.norm_sources

    def __iter__(self):
        return iter(self.norm_sources)

    def __len__(self) -> int:
        return len(self.norm_sources)


@dataclass
class SanitizationResult:
    sanitized_text: str
    removed_norms: list[str] = field(default_factory=list)
    replaced_norms: list[NormReplacement] = field(default_factory=list)
    has_allowed_norm: bool = False
    cannot_confirm: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.removed_norms or self.replaced_norms or self.cannot_confirm)

    def to_dict(self) -> dict:
        return {
            "sanitized_text": self.sanitized_text,
            "removed_norms": list(self.removed_norms),
            "replaced_norms": [r.to_dict() for r in self.replaced_norms],
            "has_allowed_norm": self.has_allowed_norm,
            "cannot_confirm": self.cannot_confirm,
        }


def _render(match: re.Match) -> str:
    prefix = "§" if match.group("prefix") == "§" else "Art."
    parts = [f"{prefix} {match.group('number')}"]
    if match.group("abs"):
        parts.append(f"Abs. {match.group('abs')}")
    if match.group("satz"):
        parts.append(f"Satz {match.group('satz')}")
    if match.group("nr"):
        parts.append(f"Nr. {match.group('nr')}")
    if match.group("lit"):
        kind = "Buchst." if match.group("lit_kind").startswith("Buchst") else "lit."
        parts.append(f"{kind} {match.group('lit')}")
    if match.group("law"):
        parts.append(_WHITESPACE.sub(" ", match.group("law")))
    return " ".join(parts)


def _mention(match: re.Match) -> NormMention:
    prefix = "§" if match.group("prefix") == "§" else "Art."
    law = match.group("law")
    return NormMention(
        start=match.start(),
        end=match.end(),
        raw=match.group(0),
        canonical=_render(match),
        head=f"{prefix} {match.group('number')}",
        law_code=_WHITESPACE.sub(" ", law) if law else None,
    )


def canonicalize_norm(norm: str) -> str:
    """
    Canonical spelling of a norm reference. Idempotent.

    Text that is not a single norm reference only has its whitespace collapsed.
    """
    text = _WHITESPACE.sub(" ", norm or "").strip()
    match = NORM_PATTERN.fullmatch(text)
    return _render(match) if match else text


def _parse(norm: str) -> Optional[NormMention]:
    match = NORM_PATTERN.fullmatch(canonicalize_norm(norm))
    return _mention(match) if match else None


def _plural_mentions(match: re.Match) -> list[NormMention]:
    law = match.group("law")
    law_code = _WHITESPACE.sub(" ", law) if law else None
    mentions = []
    for item in _ITEM_SPLIT.split(match.group("items")):
        parsed = _parse(f"§ {item} {law_code}" if law_code else f"§ {item}")
        if parsed:
            mentions.append(replace(parsed, start=match.start(), end=match.end(), raw=match.group(0)))
    return mentions


def _norm_spans(text: str) -> list[tuple[int, int, list[NormMention]]]:
    """Matched spans with the norms each one cites; a "§§" list is one span."""
    spans = [(m.start(), m.end(), _plural_mentions(m)) for m in PLURAL_NORM_PATTERN.finditer(text)]
    for match in NORM_PATTERN.finditer(text):
        if any(start <= match.start() < end for start, end, _ in spans):
            continue
        spans.append((match.start(), match.end(), [_mention(match)]))
    spans.sort(key=lambda span: span[0])
    return spans


def find_norm_mentions(text: str) -> list[NormMention]:
    """
    All norm references in text, in order of appearance.

    Each item of a plural reference is its own mention; they share the span
    and raw text of the whole list.
    """
    if not text:
        return []
    return [mention for _, _, mentions in _norm_spans(text) for mention in mentions]


def extract_norms(text: str) -> set[str]:
    """Set of canonical norms referenced in text."""
    return {m.canonical for m in find_norm_mentions(text)}


def _source_text(source: dict) -> str:
    section = source.get("section") or ""
    law = source.get("law") or ""
    parts = [
        f"{section} {law}" if section and law else "",
        section,
        source.get("title") or "",
        source.get("text") or "",
        law,
    ]
    return "\n".join(p for p in parts if p)


def build_allowlist(sources: list[dict], max_norms: int = 80) -> NormAllowlist:
    """
    Collect the norms contained in retrieved sources.

    Args:
        sources: Evidence in generator payload shape ({id, law, section, title, text})
        max_norms: Cap on the number of norms, applied after sorting

    Returns:
        NormAllowlist with norms sorted and each norm's source ids sorted
    """
    found: dict[str, set] = {}
    for source in sources or []:
        source_id = source.get("id")
        for norm in extract_norms(_source_text(source)):
            ids = found.setdefault(norm, set())
            if source_id:
                ids.add(source_id)

    capped = sorted(found)[:max_norms]
    return NormAllowlist(norm_sources={norm: sorted(found[norm]) for norm in capped})


def resolve_norm(norm: str, allowed) -> Optional[str]:
    """
    Allowed canonical norm a mention may be written as, or None.

    An exact canonical member resolves to itself. Otherwise the shortest
    allowed norm with the same leading pair ("§ 823") and the same law code
    is chosen.
    """
    canonical = canonicalize_norm(norm)
    if canonical in allowed:
        return canonical

    parsed = _parse(canonical)
    if parsed is None:
        return None

    candidates = []
    for candidate in allowed:
        other = _parse(candidate)
        if other and other.head == parsed.head and other.law_code == parsed.law_code:
            candidates.append(other.canonical)
    if not candidates:
        return None

    # TODO: product review of the tie-break; shortest wins, then lexical order
    candidates.sort(key=lambda c: (len(c), c))
    return candidates[0]


def sanitize(answer: str, allowed, language: str = "de") -> SanitizationResult:
    """
    Rewrite norm references in answer that are not backed by allowed.

    Only the matched spans are rewritten; all other text is kept verbatim.

    Args:
        answer: Generated answer text
        allowed: Collection of canonical norms (set, list or NormAllowlist)
        language: Language of the placeholder for removed norms
    """
    text = answer or ""
    placeholder = LABELS.get(language, LABELS["de"])["unverified_norm"]

    pieces = []
    removed = []
    replaced = []
    cursor = 0

    for start, end, mentions in _norm_spans(text):
        pieces.append(text[cursor:start])
        cursor = end

        rendered = []
        unchanged = True
        for mention in mentions:
            resolved = resolve_norm(mention.canonical, allowed)
            if resolved is None:
                if mention.canonical not in removed:
                    removed.append(mention.canonical)
                if placeholder not in rendered:
                    rendered.append(placeholder)
                unchanged = False
            else:
                if resolved != mention.canonical:
                    replaced.append(NormReplacement(from_norm=mention.canonical, to_norm=resolved))
                    unchanged = False
                rendered.append(resolved)

        # A fully allowed span keeps its original spelling; "§§" lists are split otherwise
        pieces.append(text[start:end] if unchanged else ", ".join(rendered))

    pieces.append(text[cursor:])
    return SanitizationResult(
        sanitized_text="".join(pieces),
        removed_norms=removed,
        replaced_norms=replaced,
    )


class CitationGuard:
    """Applies the allowlist to generated answers and writes the audit log."""

    def __init__(self, language_config: Optional[LanguageConfig] = None):
        self.language_config = language_config or LanguageConfig()
        self.labels = LABELS.get(self.language_config.language, LABELS["de"])

    def sanitize(self, answer: str, allowlist) -> SanitizationResult:
        return sanitize(answer, allowlist, language=self.language_config.language)

    def finalize(
        self,
        answer: str,
        allowlist,
        legal_basis_mode: bool = False,
        request_id: Optional[str] = None,
    ) -> SanitizationResult:
        """
        Sanitize an answer; in legal-basis mode an answer left without any
        allowed norm is replaced by the "cannot confirm" message.
        """
        result = self.sanitize(answer, allowlist)
        result.has_allowed_norm = bool(extract_norms(result.sanitized_text) & set(allowlist))

        if legal_basis_mode and not result.has_allowed_norm:
            result.sanitized_text = self.labels["cannot_confirm"]
            result.cannot_confirm = True

        if result.removed_norms or result.replaced_norms:
            record = {
                "request_id": request_id,
                "removed_norms": result.removed_norms,
                "replaced_norms": [r.to_dict() for r in result.replaced_norms],
                "legal_basis_mode": legal_basis_mode,
                "has_allowed_norm": result.has_allowed_norm,
            }
            logger.info(f"CITATION_GUARD {json.dumps(record, ensure_ascii=False)}")

        return result
