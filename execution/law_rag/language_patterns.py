"""
Pattern and Label Tables for the Law Corpus

All language-dependent regex patterns, retrieval hints and user-facing labels.
Modules import from here instead of defining tables inline.
"""

# =============================================================================
# Markup cleanup (gii-norm XML bodies)
# =============================================================================

# The six entities found in the federal law XML dumps
HTML_ENTITIES = {
    "&nbsp;": " ",
    "&amp;": "&",
    "&quot;": '"',
    "&#39;": "'",
    "&lt;": "<",
    "&gt;": ">",
}

# =============================================================================
# Legal-basis request detection
# =============================================================================

# A question matching any of these asks which law/article governs the case.
LEGAL_BASIS_PATTERNS = {
    "ru": [
        r"какими\s+законами",
        r"какой\s+закон",
        r"закон",
        r"стать(я|и)",
        r"параграф",
    ],
    "de": [
        r"§",
        r"\bart\.",
        r"\b(artikel|norm|normen|gesetz|gesetze|paragraph|paragraf|rechtsgrundlage)\b",
    ],
    "en": [
        r"§",
        r"\b(article|norm|law|laws|statute|legal basis)\b",
    ],
}

# Topic hints appended to legal-basis queries: (pattern, German retrieval terms)
LEGAL_BASIS_HINTS = [
    (r"отпуск|urlaub|vacation", "Urlaub | Urlaubsentgelt | Urlaubsabgeltung"),
    (r"увольн|kündig|dismiss", "Kündigung | Beendigung des Arbeitsverhältnisses"),
    (r"не\s*выплат|nicht\s+gezahlt|not\s+paid", "nicht gezahlt | offene Zahlung Arbeitgeber"),
    (r"компенсац|abgeltung|compensation", "Abgeltung"),
    (r"расчет|berechnung|calculat", "Berechnung"),
]

# Retrieval-only anchors prepended to legal-basis queries. Never shown to users.
LEGAL_BASIS_ANCHORS = [
    "Arbeitsrecht",
    "Bundesurlaubsgesetz BUrlG",
    "Urlaub",
    "Urlaubsentgelt",
    "Urlaubsabgeltung",
    "§ 7 Abs. 4 BUrlG",
    "§ 11 BUrlG",
]

# High-recall terms for the fixed fallback query of the two-stage retriever
DOMAIN_ANCHOR_TERMS = [
    "Arbeitsrecht",
    "Urlaub",
    "Urlaubsabgeltung",
    "Urlaubsentgelt",
    "Kündigung",
    "Beendigung des Arbeitsverhältnisses",
    "Bundesurlaubsgesetz BUrlG",
    "offene Zahlung Arbeitgeber",
]

# =============================================================================
# Citation guard labels
# =============================================================================

LABELS = {
    "de": {
        "unverified_norm": "die einschlägige Norm (nicht durch Quellen bestätigt)",
        "cannot_confirm": (
            "Ich kann die konkreten Normen anhand der gefundenen Quellen nicht bestätigen. "
            "Bitte senden Sie das zugrunde liegende Dokument, damit die genauen Vorschriften "
            "herangezogen werden können."
        ),
    },
    "en": {
        "unverified_norm": "the applicable provision (not confirmed by sources)",
        "cannot_confirm": (
            "I cannot confirm the specific provisions from the retrieved sources. "
            "Please send the underlying document so the exact provisions can be retrieved."
        ),
    },
    "ru": {
        "unverified_norm": "соответствующая норма (не подтверждена источниками)",
        "cannot_confirm": (
            "Не могу подтвердить конкретные нормы по извлечённым источникам. "
            "Пришлите документ, чтобы подтянуть точные нормы."
        ),
    },
}
