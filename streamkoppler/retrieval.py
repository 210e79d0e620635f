"""Retrieval augmentation of the instruction message.

Reference documents are embedded once at startup. For every request the
latest user query is scored against the corpus and the best matches are
appended to the instruction message together with a citation list.
"""

from __future__ import annotations

import hashlib
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Protocol, Sequence

import yaml

from .config import ReferenceDocumentConfig, RetrievalConfig
from .utils import preview

LOG = logging.getLogger(__name__)

_HASH_EMBEDDING_DIMENSIONS = 20

_CONTEXT_HEADER = "The following reference material was retrieved:\n\n"
_CONTEXT_FOOTER = (
    "Answer using the information above. If it is not sufficient you may use your own knowledge, "
    "but state clearly which parts come from the documents and which are your own additions."
)

SAMPLE_DOCUMENTS: list[dict[str, str]] = [
    {
        "id": "1",
        "title": "Machine learning basics",
        "content": (
            "Machine learning is a branch of artificial intelligence that studies how computer systems can "
            "automatically learn from data. Its algorithms fall into supervised, unsupervised and "
            "reinforcement learning. Supervised learning needs labelled data, unsupervised learning does "
            "not, and reinforcement learning learns an optimal policy by interacting with an environment."
        ),
    },
    {
        "id": "2",
        "title": "Introduction to deep learning",
        "content": (
            "Deep learning is a subfield of machine learning that uses neural networks for feature learning. "
            "Deep neural networks contain several hidden layers, each learning features at a different level "
            "of abstraction. Deep learning has achieved breakthroughs in computer vision, natural language "
            "processing and speech recognition."
        ),
    },
    {
        "id": "3",
        "title": "Natural language processing",
        "content": (
            "Natural language processing (NLP) studies the interaction between computers and human language. "
            "Typical tasks are text classification, sentiment analysis, machine translation and question "
            "answering. Transformer architectures and large language models such as BERT and GPT have driven "
            "rapid progress in recent years."
        ),
    },
    {
        "id": "4",
        "title": "Large language models",
        "content": (
            "Large language models (LLMs) are large-scale Transformer models such as GPT, PaLM and Llama. They "
            "learn language patterns and knowledge from internet-scale text through self-supervised learning "
            "and can generate text, translate, answer questions and assist with programming."
        ),
    },
    {
        "id": "5",
        "title": "Vector databases",
        "content": (
            "A vector database stores and retrieves high-dimensional embedding vectors. In a RAG system it "
            "holds document embeddings and supports efficient similarity search; common implementations are "
            "Pinecone, Faiss and Milvus."
        ),
    },
]


class Embedder(Protocol):
    """Turns texts into vectors; order of the result matches the input."""

    async def embed(self, texts: list[str]) -> list[list[float]]: ...


class HashEmbedder:
    """Deterministic sha256-derived embedding, useful offline and in tests."""

    def __init__(self, dimensions: int = _HASH_EMBEDDING_DIMENSIONS) -> None:
        self.dimensions = dimensions

    def embed_one(self, text: str) -> list[float]:
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        return [int(digest[i * 2 : (i + 1) * 2], 16) / 255 for i in range(self.dimensions)]

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return [self.embed_one(text) for text in texts]


class UpstreamEmbedder:
    """Embeds through the provider's `/embeddings` endpoint."""

    def __init__(self, upstream: Any, model: str) -> None:
        self._upstream = upstream
        self._model = model

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return await self._upstream.embeddings(self._model, texts)


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """Cosine similarity over the common prefix of two vectors."""
    length = min(len(vec_a), len(vec_b))
    dot = sum(vec_a[i] * vec_b[i] for i in range(length))
    norm_a = math.sqrt(sum(vec_a[i] * vec_a[i] for i in range(length)))
    norm_b = math.sqrt(sum(vec_b[i] * vec_b[i] for i in range(length)))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


@dataclass(frozen=True)
class ReferenceDocument:
    """One corpus entry with its precomputed embedding."""

    id: str
    title: str
    content: str
    embedding: tuple[float, ...]


@dataclass(frozen=True)
class ScoredDocument:
    document: ReferenceDocument
    score: float


def load_corpus_file(path: str | Path) -> list[ReferenceDocumentConfig]:
    """Read reference documents from a YAML list (or a mapping with `documents`)."""
    corpus_path = Path(path)
    with corpus_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or []
    if isinstance(data, dict):
        data = data.get("documents") or []
    if not isinstance(data, list):
        raise ValueError(f"Corpus root must be a list of documents: {path}")
    return [ReferenceDocumentConfig.model_validate(item) for item in data]


def configured_documents(cfg: RetrievalConfig) -> list[ReferenceDocumentConfig]:
    """Collect documents from config and corpus file; fall back to the sample corpus."""
    documents = list(cfg.documents)
    if cfg.corpus_path:
        documents.extend(load_corpus_file(cfg.corpus_path))
    if not documents:
        documents = [ReferenceDocumentConfig.model_validate(doc) for doc in SAMPLE_DOCUMENTS]
    return documents


def format_reference_context(documents: list[ReferenceDocument]) -> str:
    """Render the retrieved documents as an instruction block."""
    parts = [_CONTEXT_HEADER]
    for index, doc in enumerate(documents, start=1):
        parts.append(f"[Document {index}: {doc.title}]\n{doc.content}\n\n")
    parts.append(_CONTEXT_FOOTER)
    return "".join(parts)


class RetrievalAugmenter:
    """Scores the static corpus against a query and enriches the instruction."""

    def __init__(
        self,
        cfg: RetrievalConfig,
        embedder: Embedder,
        *,
        scorer: Callable[[Sequence[float], Sequence[float]], float] = cosine_similarity,
    ) -> None:
        self.cfg = cfg
        self._embedder = embedder
        self._scorer = scorer
        self._documents: list[ReferenceDocument] = []

    @property
    def documents(self) -> list[ReferenceDocument]:
        return list(self._documents)

    async def load(self, documents: list[ReferenceDocumentConfig] | None = None) -> int:
        """Embed and register the corpus. Called once at startup."""
        entries = configured_documents(self.cfg) if documents is None else documents
        vectors = await self._embedder.embed([doc.content for doc in entries])
        self._documents = [
            ReferenceDocument(id=doc.id, title=doc.title, content=doc.content, embedding=tuple(vector))
            for doc, vector in zip(entries, vectors)
        ]
        for doc in self._documents:
            LOG.debug("registered reference document id=%s title=%s", doc.id, doc.title)
        LOG.info("retrieval corpus loaded documents=%s", len(self._documents))
        return len(self._documents)

    async def retrieve(self, query: str) -> list[ScoredDocument]:
        """Return documents at/above threshold, best first, at most `max_documents`."""
        [query_vector] = await self._embedder.embed([query])
        scored = [ScoredDocument(doc, self._scorer(query_vector, doc.embedding)) for doc in self._documents]
        relevant = [item for item in scored if item.score >= self.cfg.similarity_threshold]
        # sorted() is stable, so equal scores keep corpus order.
        relevant = sorted(relevant, key=lambda item: item.score, reverse=True)[: self.cfg.max_documents]
        LOG.info("found %s relevant documents for query=%r", len(relevant), preview(query))
        return relevant

    async def augment(self, query: str, instruction: dict[str, Any]) -> dict[str, Any]:
        """Return an instruction message enriched with retrieved documents.

        The original message is returned unchanged when nothing qualifies or
        when retrieval fails for any reason.
        """
        try:
            relevant = await self.retrieve(query)
            if not relevant:
                LOG.debug("no relevant documents found, using original instruction")
                return instruction
            documents = [item.document for item in relevant]
            original = instruction.get("content")
            original_text = original if isinstance(original, str) else ""
            enhanced = f"{original_text}\n\n{format_reference_context(documents)}"
        except Exception:
            LOG.warning("retrieval augmentation failed, using original instruction", exc_info=True)
            return instruction

        LOG.info(
            "enhanced instruction with retrieved documents original_len=%s enhanced_len=%s",
            len(original_text),
            len(enhanced),
        )
        return {
            **instruction,
            "content": enhanced,
            "sources": [doc.title for doc in documents],
        }
