#!/usr/bin/env python3

"""
Document Chunking for Retrieval

This module splits extracted document text into bounded, overlapping units for
embedding and retrieval. Semantic boundaries are preferred where the text has
them: paragraphs first, then sentences, and fixed-width character windows only
as a last resort.

Features:
- Paragraph packing with a sentence-level split for oversized paragraphs
- Abbreviation-aware sentence detection
- Overlapping character windows for unsplittable runs of text
- Neighbour links and structure hints on every chunk
- A post-pass that folds tiny fragments into their successor

Usage:
    from document_chunking import ChunkingEngine

    engine = ChunkingEngine()
    chunks = engine.chunk_document(text, document_id="judgment-2019-044")
"""

import json
import logging
import re
from pathlib import Path
from typing import List, Optional, Sequence

import click
from pydantic import BaseModel, model_validator

logger = logging.getLogger(__name__)

# Blank lines, or form-feed / vertical-tab page breaks left behind by extraction
PARAGRAPH_SPLIT_PATTERN = re.compile(r"\n\s*\n|[\f\v]+")
# Terminal punctuation followed by whitespace and a capital letter
SENTENCE_BOUNDARY_PATTERN = re.compile(r"([.!?])\s+(?=[A-Z])")
SIMPLE_SENTENCE_PATTERN = re.compile(r"(?<=[.!?])\s+")
TRAILING_WORD_PATTERN = re.compile(r"(\w+)\.$")

# Words that end with a period without ending the sentence
ABBREVIATIONS = frozenset({
    "mr", "mrs", "ms", "dr", "prof", "sr", "jr", "vs", "etc",
    "inc", "ltd", "co", "corp", "st", "ave", "blvd", "rd",
    "sec", "art", "no", "para", "ch", "cl",
})

LIST_MARKER_PATTERN = re.compile(r"(\d+\.|\* |- |• )")
HEADING_PATTERN = re.compile(r"^(#{1,6}\s+\S.*|[A-Z][A-Z ]+)$")

STRATEGY_PARAGRAPH = "paragraph"
STRATEGY_SENTENCE = "sentence"
STRATEGY_CHARACTER = "character"


class ChunkingConfig(BaseModel):
    """Chunk sizing in characters."""
    max_chunk_size: int = 700
    min_chunk_size: int = 100
    overlap: int = 150
    allowed_variation: int = 50
    sentence_aware: bool = True
    paragraph_aware: bool = True

    @model_validator(mode="after")
    def _check_sizes(self) -> "ChunkingConfig":
        if self.max_chunk_size <= 0:
            raise ValueError("max_chunk_size must be positive")
        if not 0 <= self.overlap < self.max_chunk_size:
            raise ValueError("overlap must be non-negative and smaller than max_chunk_size")
        return self


class ChunkMetadata(BaseModel):
    index: int
    total_chunks: int
    original_length: int
    chunk_length: int
    is_paragraph_based: bool
    strategy: str
    document_id: Optional[str] = None
    previous_chunk_id: Optional[str] = None
    next_chunk_id: Optional[str] = None


class DocumentChunk(BaseModel):
    """A retrieval-sized unit of a document."""
    id: str
    content: str
    metadata: ChunkMetadata


def is_likely_paragraph_based(content: str) -> bool:
    """Heuristic: multiple line breaks, list markers, or a heading-like first line."""
    if content.count("\n") >= 2:
        return True
    if LIST_MARKER_PATTERN.search(content):
        return True
    first_line = content.split("\n", 1)[0].strip()
    return bool(HEADING_PATTERN.match(first_line))


class ChunkingEngine:
    """Splits document text into overlapping chunks along semantic boundaries."""

    def __init__(self, config: Optional[ChunkingConfig] = None):
        self.config = config or ChunkingConfig()

    def update_config(self, **changes) -> None:
        """Update the configuration; invalid combinations raise ValueError."""
        self.config = ChunkingConfig(**{**self.config.model_dump(), **changes})

    def get_config(self) -> ChunkingConfig:
        return self.config.model_copy()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def chunk(
        self,
        text: str,
        target_size: Optional[int] = None,
        overlap: Optional[int] = None,
        document_id: Optional[str] = None,
    ) -> List[DocumentChunk]:
        """Split ``text`` into chunks.

        Args:
            text: Extracted document text
            target_size: Target chunk size in characters (defaults to ``max_chunk_size``)
            overlap: Characters repeated between character-split windows
            document_id: Prefix for chunk ids

        Returns:
            Ordered chunks; empty for empty or whitespace-only text
        """
        if not text or not text.strip():
            return []

        target = target_size if target_size is not None else self.config.max_chunk_size
        overlap = self.config.overlap if overlap is None else overlap
        if target <= 0:
            raise ValueError("target_size must be positive")
        if not 0 <= overlap < target:
            raise ValueError("overlap must be non-negative and smaller than target_size")

        normalized = text.replace("\r\n", "\n").replace("\r", "\n")

        if self.config.paragraph_aware:
            strategy = STRATEGY_PARAGRAPH
            pieces = self._chunk_by_paragraphs(normalized, target, overlap)
            # Paragraphs absent or degenerate
            if len(pieces) <= 1 or any(len(p) > target * 2 for p in pieces):
                logger.debug("Paragraph chunking ineffective, falling back to sentences")
                strategy = STRATEGY_SENTENCE
                pieces = self._chunk_by_sentences(normalized, target, overlap)
        elif self.config.sentence_aware:
            strategy = STRATEGY_SENTENCE
            pieces = self._chunk_by_sentences(normalized, target, overlap)
        else:
            strategy = STRATEGY_CHARACTER
            pieces = self._chunk_by_characters(normalized, target, overlap)

        chunks = self._annotate(pieces, len(text), document_id, strategy)
        logger.debug(f"Chunked {len(text)} chars into {len(chunks)} chunks using {strategy} strategy")
        return chunks

    def optimize_sizes(
        self,
        chunks: Sequence[DocumentChunk],
        target_size: Optional[int] = None,
    ) -> List[DocumentChunk]:
        """Merge chunks shorter than ``min_chunk_size`` into their successor.

        A merge only happens when the combined chunk stays within the target
        size. Paragraph chunks keep a blank line between the merged parts.
        Indices and neighbour links are rebuilt afterwards.
        """
        if len(chunks) <= 1:
            return list(chunks)

        first = chunks[0].metadata
        separator = "\n\n" if first.strategy == STRATEGY_PARAGRAPH else " "
        target = target_size if target_size is not None else self.config.max_chunk_size
        contents: List[str] = []
        merged = 0
        i = 0
        while i < len(chunks):
            current = chunks[i].content
            if len(current) < self.config.min_chunk_size and i < len(chunks) - 1:
                following = chunks[i + 1].content
                if len(current) + len(separator) + len(following) <= target:
                    contents.append(f"{current}{separator}{following}")
                    merged += 1
                    i += 2
                    continue
            contents.append(current)
            i += 1

        if not merged:
            return list(chunks)

        logger.debug(f"Merged {merged} undersized chunks")
        return self._annotate(contents, first.original_length, first.document_id, first.strategy)

    def chunk_document(self, text: str, document_id: Optional[str] = None) -> List[DocumentChunk]:
        """Ingestion entry point: chunk the text and fold tiny fragments."""
        return self.optimize_sizes(self.chunk(text, document_id=document_id))

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _chunk_by_paragraphs(self, text: str, target: int, overlap: int) -> List[str]:
        paragraphs = [p.strip() for p in PARAGRAPH_SPLIT_PATTERN.split(text) if p and p.strip()]
        limit = target + self.config.allowed_variation

        chunks: List[str] = []
        current = ""
        for paragraph in paragraphs:
            candidate = f"{current}\n\n{paragraph}" if current else paragraph
            if current and len(candidate) > target:
                chunks.append(current)
                current = paragraph
            else:
                current = candidate

            # A single huge paragraph: split just this buffer by sentences
            if len(current) > limit:
                chunks.extend(self._chunk_by_sentences(current, target, overlap))
                current = ""

        if current:
            chunks.append(current)
        return chunks

    def _split_sentences(self, text: str) -> List[str]:
        sentences: List[str] = []
        start = 0
        for match in SENTENCE_BOUNDARY_PATTERN.finditer(text):
            end = match.start(1) + 1
            if match.group(1) == ".":
                trailing = TRAILING_WORD_PATTERN.search(text[start:end])
                if trailing and trailing.group(1).lower() in ABBREVIATIONS:
                    continue
            sentence = text[start:end].strip()
            if sentence:
                sentences.append(sentence)
            start = match.end()

        tail = text[start:].strip()
        if tail:
            sentences.append(tail)
        return sentences

    def _chunk_by_sentences(self, text: str, target: int, overlap: int) -> List[str]:
        sentences = self._split_sentences(text)
        if len(sentences) <= 1 or all(len(s) > target for s in sentences):
            sentences = [s.strip() for s in SIMPLE_SENTENCE_PATTERN.split(text) if s.strip()]

        chunks: List[str] = []
        current = ""
        for sentence in sentences:
            if len(sentence) > target:
                if current:
                    chunks.append(current)
                    current = ""
                chunks.extend(self._chunk_by_characters(sentence, target, overlap))
                continue

            candidate = f"{current} {sentence}" if current else sentence
            if current and len(candidate) > target:
                chunks.append(current)
                current = sentence
            else:
                current = candidate

        if current:
            chunks.append(current)
        return chunks

    @staticmethod
    def _chunk_by_characters(text: str, target: int, overlap: int) -> List[str]:
        step = target - overlap
        chunks: List[str] = []
        start = 0
        while True:
            chunks.append(text[start:start + target])
            if start + target >= len(text):
                break
            start += step
        return chunks

    # ------------------------------------------------------------------
    # Annotation
    # ------------------------------------------------------------------

    def _annotate(
        self,
        contents: Sequence[str],
        original_length: int,
        document_id: Optional[str],
        strategy: str,
    ) -> List[DocumentChunk]:
        prefix = document_id or "doc"
        total = len(contents)
        return [
            DocumentChunk(
                id=f"{prefix}_{index}",
                content=content,
                metadata=ChunkMetadata(
                    index=index,
                    total_chunks=total,
                    original_length=original_length,
                    chunk_length=len(content),
                    is_paragraph_based=self.config.paragraph_aware and is_likely_paragraph_based(content),
                    strategy=strategy,
                    document_id=document_id,
                    previous_chunk_id=f"{prefix}_{index - 1}" if index > 0 else None,
                    next_chunk_id=f"{prefix}_{index + 1}" if index < total - 1 else None,
                ),
            )
            for index, content in enumerate(contents)
        ]


# ---------------------------------------------------------------------------
# Command-line interface
# ---------------------------------------------------------------------------


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("source", type=click.Path(exists=True, dir_okay=False, readable=True))
@click.option("--document-id", default=None, help="Prefix for chunk ids (defaults to the file stem).")
@click.option("--chunk-size", type=int, default=700, show_default=True, help="Target chunk size in characters.")
@click.option("--overlap", type=int, default=150, show_default=True, help="Characters repeated between character-split windows.")
@click.option("--min-chunk-size", type=int, default=100, show_default=True, help="Chunks below this size are merged into their successor.")
@click.option("--optimize/--no-optimize", default=True, show_default=True, help="Merge undersized chunks after splitting.")
@click.option("--output", type=click.Path(dir_okay=False, writable=True), default=None, help="Write JSON here instead of stdout.")
@click.option("--verbose", is_flag=True, help="Enable debug logging.")
def cli(
    source: str,
    document_id: Optional[str],
    chunk_size: int,
    overlap: int,
    min_chunk_size: int,
    optimize: bool,
    output: Optional[str],
    verbose: bool,
) -> None:
    """Chunk the extracted text in SOURCE and print the chunks as JSON."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        config = ChunkingConfig(max_chunk_size=chunk_size, overlap=overlap, min_chunk_size=min_chunk_size)
    except ValueError as exc:
        raise click.UsageError(str(exc)) from exc

    path = Path(source)
    text = path.read_text(encoding="utf-8", errors="replace")
    engine = ChunkingEngine(config)
    doc_id = document_id or path.stem
    chunks = engine.chunk_document(text, doc_id) if optimize else engine.chunk(text, document_id=doc_id)

    payload = json.dumps([c.model_dump() for c in chunks], indent=2, ensure_ascii=False)
    if output:
        Path(output).write_text(payload, encoding="utf-8")
        click.echo(f"[info] Wrote {len(chunks)} chunks to {output}", err=True)
    else:
        click.echo(payload)


if __name__ == "__main__":
    cli()
