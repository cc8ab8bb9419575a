"""Configuration models: retrieval profiles and session tuning."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class CachePolicy(str, Enum):
    MEMORY = "memory"  # process lifetime
    FILE = "file"  # persisted JSON per corpus


class RetrievalProfile(BaseModel):
    """How a corpus is parsed, cached, tagged and injected into the prompt."""

    name: str
    instruction_template: str
    citation_tag: str | None = None  # e.g. "[{source_id}]"
    cache_policy: CachePolicy = CachePolicy.MEMORY
    cache_dir: str = ".corpus_cache"
    top_k: int = Field(default=3, ge=1)
    batch_size: int = Field(default=10, ge=1)
    min_fields: int = Field(default=3, ge=1)
    text_column: int = Field(default=2, ge=0)
    source_column: int = Field(default=3, ge=0)
    passage_separator: str = "\n\n"

    def tag(self, source_id: str) -> str:
        if self.citation_tag is None:
            return ""
        return self.citation_tag.format(source_id=source_id)


class SessionConfig(BaseModel):
    """Timing knobs for the stream session controller."""

    flush_interval: float = Field(default=1.0, ge=0.0)
    read_retries: int = Field(default=1, ge=0)
    read_retry_backoff: float = Field(default=1.0, ge=0.0)
    credit_refresh_delay: float = Field(default=1.0, ge=0.0)


RELATED_DOCUMENTS = RetrievalProfile(
    name="related_documents",
    instruction_template="— Related contexts from our index —",
)

CITED_CORPUS = RetrievalProfile(
    name="cited_corpus",
    instruction_template=(
        "Answer using the reference passages below. Each passage starts with its "
        "source tag in square brackets; cite the tag of every passage you rely on, "
        "e.g. [PMID12345]. If the passages do not cover the question, say so."
    ),
    citation_tag="[{source_id}]",
    cache_policy=CachePolicy.FILE,
)

PROFILES: dict[str, RetrievalProfile] = {
    RELATED_DOCUMENTS.name: RELATED_DOCUMENTS,
    CITED_CORPUS.name: CITED_CORPUS,
}
