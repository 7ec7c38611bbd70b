"""
Grounded answer orchestration: evidence -> generator -> citation guard.

The generator is an external callable that receives the evidence payload and
the question and returns JSON text with an "analysis" field. Whatever the
generator writes, the analysis returned to the caller only cites norms that
occur in the evidence.
"""

import json
import logging
from typing import Callable, Optional
from dataclasses import dataclass

from .citation_guard import CitationGuard, SanitizationResult
from .retriever import LawRetriever, EvidenceBundle

logger = logging.getLogger(__name__)

GenerateFn = Callable[[dict, str], str]


@dataclass
class GroundedAnswer:
    response: dict
    evidence: EvidenceBundle
    guard: SanitizationResult

    @property
    def analysis(self) -> str:
        return self.response.get("analysis", "")


class GroundedAnswerer:
    """Runs retrieval, calls the generator and sanitizes its analysis."""

    def __init__(
        self,
        retriever: LawRetriever,
        generate_fn: GenerateFn,
        guard: Optional[CitationGuard] = None,
    ):
        self.retriever = retriever
        self.generate_fn = generate_fn
        self.guard = guard or CitationGuard()

    def answer(self, question: str, request_id: Optional[str] = None) -> GroundedAnswer:
        """
        Answer a question with guarded citations.

        Generator output that is not a JSON object is treated as the analysis
        text itself, so it still passes the guard.
        """
        evidence = self.retriever.retrieve_evidence(question, request_id=request_id)
        raw = self.generate_fn(evidence.to_generator_payload(), question)

        try:
            response = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Generator returned invalid JSON, guarding raw text: {e}")
            response = None
        if not isinstance(response, dict):
            if response is not None:
                logger.warning("Generator response is not a JSON object, guarding raw text")
            response = {"analysis": raw if isinstance(raw, str) else ""}

        result = self.guard.finalize(
            str(response.get("analysis") or ""),
            evidence.allowlist,
            legal_basis_mode=evidence.legal_basis_mode,
            request_id=request_id,
        )
        response["analysis"] = result.sanitized_text
        if result.changed:
            logger.info(
                f"Answer sanitized: removed={len(result.removed_norms)} "
                f"replaced={len(result.replaced_norms)} cannot_confirm={result.cannot_confirm}"
            )
        return GroundedAnswer(response=response, evidence=evidence, guard=result)
