from unittest.mock import AsyncMock, MagicMock, Mock, patch

import httpx
import pytest
from factories import context, faq

from mchatly.services.knowledge_service import (
    BgeEmbedder,
    KnowledgeMatcher,
    KnowledgeSearchError,
    QdrantIndex,
    build_context_snippets,
    select_best_faq,
    to_candidate,
)


def _mock_async_client(mock_client_class, response):
    mock_client = MagicMock()
    mock_client.post = AsyncMock(return_value=response)
    mock_client_class.return_value.__aenter__.return_value = mock_client
    return mock_client


def _response(status_code: int, payload=None, text: str = ""):
    response = Mock()
    response.status_code = status_code
    response.json.return_value = payload
    response.text = text
    return response


class TestToCandidate:
    def test_faq_match(self):
        candidate = to_candidate(
            {"id": 7, "score": 0.93, "metadata": {"text": "A: yes", "kind": "faq", "question": "Open?"}}
        )
        assert candidate.id == "7"
        assert candidate.kind == "faq"
        assert candidate.question == "Open?"

    def test_untagged_match_is_context(self):
        candidate = to_candidate({"id": "x", "score": 0.5, "metadata": {"text": "We ship."}})
        assert candidate.kind == "context"
        assert candidate.question is None

    def test_non_string_payload_skipped(self):
        assert to_candidate({"id": "x", "score": 0.5, "metadata": {"text": 42}}) is None
        assert to_candidate({"id": "x", "score": 0.5, "metadata": {}}) is None

    def test_missing_score_skipped(self):
        assert to_candidate({"id": "x", "metadata": {"text": "t"}}) is None


class TestSelectBestFaq:
    def test_picks_highest_faq(self):
        best = select_best_faq([faq("a", 0.7, id="1"), context("c", 0.99), faq("b", 0.9, id="2")])
        assert best.id == "2"

    def test_first_seen_wins_exact_tie(self):
        best = select_best_faq([faq("a", 0.9, id="first"), faq("b", 0.9, id="second")])
        assert best.id == "first"

    def test_no_faq(self):
        assert select_best_faq([context("c", 0.9)]) is None


class TestBuildContextSnippets:
    def test_sorted_by_score_and_limited(self):
        candidates = [context(f"c{i}", i / 10, id=str(i)) for i in range(1, 9)]
        assert build_context_snippets(candidates, 5, 0.68) == ["c8", "c7", "c6", "c5", "c4"]

    def test_low_scoring_faq_excluded(self):
        candidates = [faq("weak faq", 0.5), context("ctx", 0.4)]
        assert build_context_snippets(candidates, 5, 0.68) == ["ctx"]

    def test_faq_above_threshold_included(self):
        candidates = [faq("strong faq", 0.7), context("ctx", 0.4)]
        assert build_context_snippets(candidates, 5, 0.68) == ["strong faq", "ctx"]


class TestBgeEmbedder:
    @pytest.mark.asyncio
    @patch("mchatly.services.knowledge_service.httpx.AsyncClient")
    async def test_returns_embedding_from_list(self, mock_client_class):
        _mock_async_client(mock_client_class, _response(200, [[0.1, 0.2, 0.3]]))
        assert await BgeEmbedder("http://embed").embed("hello") == [0.1, 0.2, 0.3]

    @pytest.mark.asyncio
    @patch("mchatly.services.knowledge_service.httpx.AsyncClient")
    async def test_returns_embedding_from_dict(self, mock_client_class):
        _mock_async_client(mock_client_class, _response(200, {"embedding": [0.5, 0.6]}))
        assert await BgeEmbedder("http://embed").embed("hello") == [0.5, 0.6]

    @pytest.mark.asyncio
    @patch("mchatly.services.knowledge_service.httpx.AsyncClient")
    async def test_raises_on_error_status(self, mock_client_class):
        _mock_async_client(mock_client_class, _response(500, text="Server error"))
        with pytest.raises(KnowledgeSearchError) as exc_info:
            await BgeEmbedder("http://embed").embed("hello")
        assert "Embedding error" in str(exc_info.value)


class TestQdrantIndex:
    @pytest.mark.asyncio
    @patch("mchatly.services.knowledge_service.httpx.AsyncClient")
    async def test_search_builds_tenant_filter(self, mock_client_class):
        payload = {
            "result": [
                {"id": 1, "score": 0.9, "payload": {"metadata": {"text": "hello", "kind": "faq"}}},
                {"id": 2, "score": 0.7, "payload": {"content": "from content", "metadata": {}}},
            ]
        }
        mock_client = _mock_async_client(mock_client_class, _response(200, payload))

        index = QdrantIndex(host="http://qdrant:6333/", collection="kb", api_key="secret")
        matches = await index.search([0.1], top_k=8, filter={"chatbot_id": "bot-1"})

        url = mock_client.post.call_args[0][0]
        body = mock_client.post.call_args[1]["json"]
        assert url == "http://qdrant:6333/collections/kb/points/search"
        assert mock_client.post.call_args[1]["headers"] == {"api-key": "secret"}
        assert body["limit"] == 8
        assert body["filter"]["must"] == [{"key": "metadata.chatbot_id", "match": {"value": "bot-1"}}]
        assert matches[0] == {"id": "1", "score": 0.9, "metadata": {"text": "hello", "kind": "faq"}}
        assert matches[1]["metadata"]["text"] == "from content"

    @pytest.mark.asyncio
    @patch("mchatly.services.knowledge_service.httpx.AsyncClient")
    async def test_search_raises_on_error(self, mock_client_class):
        _mock_async_client(mock_client_class, _response(503, text="down"))
        with pytest.raises(KnowledgeSearchError):
            await QdrantIndex(host="http://q", collection="kb").search([0.1], top_k=8, filter={})


class TestKnowledgeMatcher:
    def _matcher(self, matches):
        embedder = Mock()
        embedder.embed = AsyncMock(return_value=[0.1, 0.2])
        index = Mock()
        index.search = AsyncMock(return_value=matches)
        return KnowledgeMatcher(embedder, index, top_k=8, max_snippets=5, context_threshold=0.68), index

    @pytest.mark.asyncio
    async def test_scopes_search_to_tenant(self):
        matcher, index = self._matcher([])
        await matcher.match("bot-1", "hours?")

        index.search.assert_awaited_once_with(
            [0.1, 0.2], top_k=8, filter={"chatbot_id": "bot-1"}, include_metadata=True
        )

    @pytest.mark.asyncio
    async def test_no_matches_is_empty_not_error(self):
        matcher, _ = self._matcher([])
        result = await matcher.match("bot-1", "hours?")

        assert result.is_empty
        assert result.best_faq is None
        assert result.context_snippets == []

    @pytest.mark.asyncio
    async def test_low_faq_never_in_context(self):
        matcher, _ = self._matcher(
            [
                {"id": "f", "score": 0.5, "metadata": {"text": "A: maybe", "kind": "faq", "question": "q"}},
                {"id": "c", "score": 0.6, "metadata": {"text": "Context text"}},
            ]
        )
        result = await matcher.match("bot-1", "q")

        assert result.best_faq.id == "f"
        assert result.context_snippets == ["Context text"]

    @pytest.mark.asyncio
    async def test_http_error_wrapped(self):
        matcher, index = self._matcher([])
        index.search.side_effect = httpx.ConnectError("refused")

        with pytest.raises(KnowledgeSearchError):
            await matcher.match("bot-1", "q")
