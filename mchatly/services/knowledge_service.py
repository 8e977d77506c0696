from dataclasses import dataclass, field
from typing import List, Optional, Protocol

import httpx

from mchatly.config import settings
from mchatly.logging_config import get_logger

logger = get_logger("knowledge_service")

FAQ_KIND = "faq"
CONTEXT_KIND = "context"


class KnowledgeSearchError(Exception):
    """Embedding or vector search failed."""


@dataclass
class KnowledgeCandidate:
    id: str
    text: str
    score: float
    kind: str = CONTEXT_KIND
    question: Optional[str] = None


@dataclass
class KnowledgeMatch:
    best_faq: Optional[KnowledgeCandidate] = None
    context_snippets: List[str] = field(default_factory=list)
    candidates: List[KnowledgeCandidate] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.candidates


class Embedder(Protocol):
    async def embed(self, text: str) -> List[float]: ...


class VectorIndex(Protocol):
    async def search(
        self,
        vector: List[float],
        top_k: int,
        filter: dict,
        include_metadata: bool = True,
    ) -> List[dict]: ...


class BgeEmbedder:
    """Embedding client for a text-embeddings-inference style BGE-M3 service."""

    def __init__(self, url: str = settings.embedding_url, timeout: float = 30.0):
        self.url = url
        self.timeout = timeout

    async def embed(self, text: str) -> List[float]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, json={"inputs": text})
        if response.status_code != 200:
            raise KnowledgeSearchError(f"Embedding error: {response.status_code} - {response.text}")

        data = response.json()
        # Handle different response formats
        if isinstance(data, list) and len(data) > 0:
            return data[0] if isinstance(data[0], list) else data
        if isinstance(data, dict):
            vector = data.get("embedding") or data.get("embeddings")
            if vector:
                return vector[0] if isinstance(vector[0], list) else vector
        raise KnowledgeSearchError("Embedding response has no vector")


class QdrantIndex:
    """Qdrant REST search; returns `{id, score, metadata}` dicts."""

    def __init__(
        self,
        host: str = settings.qdrant_host,
        collection: str = settings.qdrant_collection,
        api_key: Optional[str] = settings.qdrant_api_key,
        timeout: float = 30.0,
    ):
        self.host = host.rstrip("/")
        self.collection = collection
        self.api_key = api_key
        self.timeout = timeout

    async def search(
        self,
        vector: List[float],
        top_k: int,
        filter: dict,
        include_metadata: bool = True,
    ) -> List[dict]:
        headers = {"api-key": self.api_key} if self.api_key else {}
        must = [{"key": f"metadata.{key}", "match": {"value": value}} for key, value in filter.items()]
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.host}/collections/{self.collection}/points/search",
                headers=headers,
                json={
                    "vector": vector,
                    "limit": top_k,
                    "filter": {"must": must},
                    "with_payload": include_metadata,
                },
            )
        if response.status_code != 200:
            raise KnowledgeSearchError(f"Qdrant search error: {response.status_code} - {response.text}")

        matches = []
        for point in response.json().get("result", []):
            payload = point.get("payload") or {}
            metadata = dict(payload.get("metadata") or {})
            if "text" not in metadata and payload.get("content") is not None:
                metadata["text"] = payload.get("content")
            matches.append({"id": str(point.get("id")), "score": point.get("score"), "metadata": metadata})
        return matches


def to_candidate(match: dict) -> Optional[KnowledgeCandidate]:
    """Convert a raw vector match; matches without text or score are dropped."""
    metadata = match.get("metadata") or {}
    text = metadata.get("text")
    score = match.get("score")
    if not isinstance(text, str) or not text or score is None:
        return None
    kind = FAQ_KIND if metadata.get("kind") == FAQ_KIND else CONTEXT_KIND
    question = str(metadata.get("question") or "") if kind == FAQ_KIND else None
    return KnowledgeCandidate(id=str(match.get("id")), text=text, score=float(score), kind=kind, question=question)


def select_best_faq(candidates: List[KnowledgeCandidate]) -> Optional[KnowledgeCandidate]:
    best = None
    for candidate in candidates:
        # Strictly greater: on exact ties the first-seen FAQ stays.
        if candidate.kind == FAQ_KIND and (best is None or candidate.score > best.score):
            best = candidate
    return best


def build_context_snippets(
    candidates: List[KnowledgeCandidate],
    max_snippets: int,
    context_threshold: float,
) -> List[str]:
    ranked = sorted(candidates, key=lambda c: c.score, reverse=True)
    snippets = []
    for candidate in ranked:
        if candidate.kind == FAQ_KIND and candidate.score < context_threshold:
            continue
        snippets.append(candidate.text)
        if len(snippets) >= max_snippets:
            break
    return snippets


class KnowledgeMatcher:
    """Retrieves tenant-scoped FAQ and context candidates for a visitor query."""

    def __init__(
        self,
        embedder: Embedder,
        index: VectorIndex,
        top_k: int = settings.knowledge_top_k,
        max_snippets: int = settings.knowledge_max_snippets,
        context_threshold: float = settings.context_inclusion_threshold,
    ):
        self.embedder = embedder
        self.index = index
        self.top_k = top_k
        self.max_snippets = max_snippets
        self.context_threshold = context_threshold

    async def match(self, tenant_id: str, query_text: str) -> KnowledgeMatch:
        try:
            vector = await self.embedder.embed(query_text)
            matches = await self.index.search(
                vector,
                top_k=self.top_k,
                filter={"chatbot_id": tenant_id},
                include_metadata=True,
            )
        except KnowledgeSearchError:
            raise
        except httpx.HTTPError as exc:
            raise KnowledgeSearchError(f"Knowledge backend unreachable: {exc}") from exc

        candidates = [c for c in (to_candidate(m) for m in matches or []) if c is not None]
        result = KnowledgeMatch(
            best_faq=select_best_faq(candidates),
            context_snippets=build_context_snippets(candidates, self.max_snippets, self.context_threshold),
            candidates=candidates,
        )
        logger.info(
            "Knowledge match",
            extra={
                "context": {
                    "tenant_id": tenant_id,
                    "candidates": len(candidates),
                    "snippets": len(result.context_snippets),
                    "best_faq_score": result.best_faq.score if result.best_faq else None,
                }
            },
        )
        return result
