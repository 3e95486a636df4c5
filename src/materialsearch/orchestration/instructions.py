"""Agent instruction composition."""

from __future__ import annotations

from ..config import DEFAULT_THREAD_PREAMBLE

__all__ = ["OPERATIONAL_DIRECTIVES", "build_instructions"]

OPERATIONAL_DIRECTIVES: tuple[str, ...] = (
    "Always search the corpus with the tools before answering; never answer from memory alone.",
    "Try several phrasings of every query: synonyms, Korean and English variants, abbreviations, "
    "chemical formulas, and short fragments of long terms.",
    "Corpus files come from OCR and PDF extraction, so words may be split by line breaks or spaces; "
    "when a query finds nothing, retry with shorter fragments.",
    "Iterate: use list_corpus_files to find candidate documents, search_corpus_text to locate "
    "evidence, and read_corpus_file to confirm it in context.",
    "List every matching material with its supporting evidence and the file path and line number.",
    "Say plainly what you could not find.",
    "Never invent citations, file names, line numbers, or quotations.",
)


def build_instructions(preamble: str | None = None) -> str:
    """Thread preamble followed by the fixed operational directives."""

    head = (preamble or "").strip() or DEFAULT_THREAD_PREAMBLE
    directives = "\n".join(f"- {line}" for line in OPERATIONAL_DIRECTIVES)
    return f"{head}\n\nOperational requirements:\n{directives}"
