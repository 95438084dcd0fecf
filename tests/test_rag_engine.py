"""
Tests for the RAG engine.

Provider traffic is answered by httpx.MockTransport handlers; documents
live in a temp directory.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from conftest import json_response
from core.rag_engine import FAILED_STATUS, ChatResult, RAGEngine
from document_management import IngestTask, document_key
from transport.http import CANCELLED_STATUS

# 105 characters; with 40-char windows and overlap 5 this gives the spans
# [1, 40] (lines 1-2), [36, 75] (lines 1-3) and [71, 105] (lines 2-3).
MANUAL = (
    "The warranty covers parts and labor.\n"
    "Claims need the original receipt.\n"
    "Batteries are not covered at all.\n"
)

ANSWER = "The warranty covers parts and labor."
QUESTION = "What does the warranty cover?"


def chat_handler(answer, requests=None, status_code=200):
    def handler(req):
        if requests is not None:
            requests.append(json.loads(req.content))
        if status_code != 200:
            return httpx.Response(status_code, text="upstream error")
        return json_response({"choices": [{"message": {"role": "assistant", "content": answer}}]})
    return handler


def embedding_handler(calls):
    """Batch requests get [1, i] per input; single queries get [1, 0]."""

    def handler(req):
        body = json.loads(req.content)
        calls.append(body)
        inputs = body["input"]
        if isinstance(inputs, list):
            data = [{"index": i, "embedding": [1.0, float(i)]} for i in range(len(inputs))]
        else:
            data = [{"index": 0, "embedding": [1.0, 0.0]}]
        return json_response({"data": data})

    return handler


def unreachable(req):
    raise AssertionError(f"unexpected provider call to {req.url}")


@pytest.fixture
def docs_dir(tmp_path):
    path = tmp_path / "docs"
    path.mkdir()
    return path


@pytest.fixture
def manual(docs_dir):
    path = docs_dir / "manual.txt"
    path.write_text(MANUAL, encoding="utf-8")
    return path


@pytest.fixture
def engine_factory(cfg, store, history, llm_factory):
    def factory(handler=unreachable, settings=None):
        settings = settings or cfg
        return RAGEngine(settings, store=store, history=history, client=llm_factory(handler, settings))
    return factory


@pytest.fixture
def engine(engine_factory):
    return engine_factory()


class TestIngestion:
    """Test document ingestion and removal."""

    def test_ingest_query_remove(self, engine, manual):
        assert engine.ingest_file(manual) is True

        docs = engine.list_documents()
        assert list(docs) == [document_key(manual)]
        assert len(docs[document_key(manual)].chunk_ids) == 3
        assert engine.get_stats()["vector_count"] == 3

        results = engine.query("warranty parts labor", top_k=2)
        assert len(results) == 2
        assert results[0].score >= results[1].score

        assert engine.remove_document(manual) is True
        assert engine.list_documents() == {}
        assert engine.query("warranty", top_k=2) == []

    def test_chunk_spans_and_context(self, engine, manual):
        engine.ingest_file(manual)
        items = engine.store.load().items

        assert [(c.start, c.end) for c in items] == [(1, 40), (36, 75), (71, 105)]
        assert items[1].left_context == MANUAL[31:35]
        assert items[0].right_context == MANUAL[40:44]

    def test_chunk_options_override(self, engine, manual):
        engine.ingest_file(manual, {"chunkSize": 500, "overlap": 0})
        assert len(engine.store.load().items) == 1

    def test_same_content_stored_once(self, engine, manual, docs_dir):
        copy = docs_dir / "copy.txt"
        copy.write_text(MANUAL, encoding="utf-8")

        engine.ingest_file(manual)
        engine.ingest_file(copy)

        docs = engine.list_documents()
        assert len(docs) == 2
        assert len(engine.store.load().items) == 3
        assert docs[document_key(copy)].chunk_ids == docs[document_key(manual)].chunk_ids

    def test_reingest_changed_content(self, engine, manual):
        engine.ingest_file(manual)
        manual.write_text("Short replacement text.", encoding="utf-8")
        engine.ingest_file(manual)

        items = engine.store.load().items
        assert [c.text for c in items] == ["Short replacement text."]

    def test_unreadable_or_empty(self, engine, docs_dir):
        empty = docs_dir / "empty.txt"
        empty.write_text("  \n", encoding="utf-8")

        assert engine.ingest_file(empty) is False
        assert engine.ingest_file(docs_dir / "missing.txt") is False
        assert engine.list_documents() == {}

    def test_remove_unknown(self, engine, docs_dir):
        assert engine.remove_document(docs_dir / "nothing.txt") is False

    async def test_ingest_files_async_expands_directories(self, engine, manual, docs_dir):
        (docs_dir / "notes.md").write_text("Registration is optional.", encoding="utf-8")
        (docs_dir / "image.bin").write_bytes(b"\x00\x01")
        completions = []

        handle = engine.ingest_files_async([docs_dir], completions.append)
        assert isinstance(handle, IngestTask)
        await handle

        assert handle.total == 2
        assert handle.succeeded
        assert completions == [handle]
        assert set(engine.list_documents()) == {
            document_key(manual),
            document_key(docs_dir / "notes.md"),
        }


class TestProviderEmbeddings:
    """Test provider-backed ingestion, retrieval and revectorization."""

    async def test_provider_vectors_stored(self, engine_factory, manual):
        calls = []
        engine = engine_factory(embedding_handler(calls))

        assert await engine.ingest_file_with_provider_embeddings(manual) is True

        assert [c.vector for c in engine.store.load().items] == [[1.0, 0.0], [1.0, 1.0], [1.0, 2.0]]
        assert len(calls) == 1
        assert len(calls[0]["input"]) == 3

    async def test_unchanged_document_skips_provider(self, engine_factory, manual):
        calls = []
        engine = engine_factory(embedding_handler(calls))

        await engine.ingest_file_with_provider_embeddings(manual)
        await engine.ingest_file_with_provider_embeddings(manual)

        assert len(calls) == 1
        assert len(engine.store.load().items) == 3

    async def test_failed_provider_falls_back_to_local(self, engine_factory, manual):
        engine = engine_factory(lambda req: httpx.Response(500, text="down"))

        assert await engine.ingest_file_with_provider_embeddings(manual) is True

        vectors = [c.vector for c in engine.store.load().items]
        assert all(len(v) == engine.cfg.EMBEDDING_DIM for v in vectors)
        assert engine.embedder.fallbacks == 3

    async def test_query_with_provider_embedding(self, engine_factory, manual):
        calls = []
        engine = engine_factory(embedding_handler(calls))
        await engine.ingest_file_with_provider_embeddings(manual)

        results = await engine.query_async("warranty", top_k=1, use_provider_embeddings=True)

        assert len(results) == 1
        assert results[0].chunk.start == 1
        assert results[0].score == pytest.approx(1.0)
        assert calls[-1]["input"] == "warranty"

    async def test_revectorize_keeps_ids(self, engine_factory, manual):
        calls = []
        engine = engine_factory(embedding_handler(calls))
        engine.ingest_file(manual)
        ids_before = [c.id for c in engine.store.load().items]

        report = await engine.revectorize_store()

        items = engine.store.load().items
        assert report.documents == 1
        assert report.chunks == 3
        assert report.fallbacks == 0
        assert report.saved
        assert [c.id for c in items] == ids_before
        assert [c.vector for c in items] == [[1.0, 0.0], [1.0, 1.0], [1.0, 2.0]]

    async def test_revectorize_in_slices(self, engine_factory, cfg, manual):
        calls = []
        engine = engine_factory(embedding_handler(calls), cfg.model_copy(update={"EMBED_BATCH_SIZE": 2}))
        engine.ingest_file(manual)

        report = await engine.revectorize_store()

        assert [len(c["input"]) for c in calls] == [2, 1]
        assert report.fallbacks == 0
        assert [c.vector for c in engine.store.load().items] == [[1.0, 0.0], [1.0, 1.0], [1.0, 0.0]]

    async def test_revectorize_fallback(self, engine_factory, manual):
        engine = engine_factory(lambda req: httpx.Response(503, text="busy"))
        engine.ingest_file(manual)

        report = await engine.revectorize_store()

        assert report.fallbacks == 3
        assert all(len(c.vector) == engine.cfg.EMBEDDING_DIM for c in engine.store.load().items)

    async def test_revectorize_async_callback(self, engine_factory, manual):
        reports = []
        engine = engine_factory(embedding_handler([]))
        engine.ingest_file(manual)

        await engine.revectorize_store_async(reports.append)

        assert len(reports) == 1
        assert reports[0].chunks == 3


class TestPrompt:
    """Test context prompt construction."""

    def test_sources_and_question(self, engine, manual):
        engine.ingest_file(manual)
        results = engine.query("warranty", top_k=3)

        prompt = engine.build_context_prompt(f"  {QUESTION}\r\n", results)

        assert "Source 1: manual.txt (lines " in prompt
        assert "Source 3: manual.txt" in prompt
        assert prompt.endswith(f"Question: {QUESTION}")

    def test_same_file_name_in_two_directories(self, engine, docs_dir):
        for folder, text in (("v1", MANUAL), ("v2", "The warranty now lasts two years.\n")):
            (docs_dir / folder).mkdir()
            (docs_dir / folder / "manual.txt").write_text(text, encoding="utf-8")
            assert engine.ingest_file(docs_dir / folder / "manual.txt")

        prompt = engine.build_context_prompt(QUESTION, engine.query("warranty", top_k=10))

        assert ": v1/manual.txt (lines " in prompt
        assert ": v2/manual.txt (lines " in prompt
        assert ": manual.txt (lines " not in prompt

    def test_no_results(self, engine):
        prompt = engine.build_context_prompt(QUESTION, [])
        assert "(no matching passages)" in prompt

    def test_line_ranges(self, engine, manual):
        engine.ingest_file(manual)
        results = sorted(engine.query("warranty", top_k=3), key=lambda r: r.chunk.start)

        sources = engine.locate_sources(results)

        assert [(s.start_line, s.end_line) for s in sources] == [(1, 2), (1, 3), (2, 3)]

    def test_line_ranges_for_deleted_document(self, engine, manual):
        engine.ingest_file(manual)
        results = engine.query("warranty", top_k=3)
        manual.unlink()

        sources = engine.locate_sources(results)

        for source, result in zip(sources, results):
            assert source.start_line == 1
            assert source.end_line == result.chunk.text.count("\n") + 1


class TestChat:
    """Test non-streamed and streamed chat."""

    async def test_answer_with_citations_and_history(self, engine_factory, manual):
        requests = []
        engine = engine_factory(chat_handler(ANSWER, requests))
        engine.ingest_file(manual)

        result = await engine.chat_with_rag(QUESTION, top_k=3)

        assert result.ok
        assert result.text == f"{ANSWER}\n\nSources:\n1) manual.txt (lines 1-3)"
        assert len(result.results) == 3

        messages = requests[0]["messages"]
        assert messages[0]["role"] == "system"
        assert messages[1]["role"] == "user"
        assert f"Question: {QUESTION}" in messages[1]["content"]

        entries = engine.history.entries()
        assert len(entries) == 1
        assert entries[0].user == QUESTION
        assert entries[0].status == 200
        assert json.loads(entries[0].raw)["choices"][0]["message"]["content"] == ANSWER

    async def test_denial_not_cited(self, engine_factory, manual):
        engine = engine_factory(chat_handler("I don't know."))
        engine.ingest_file(manual)

        result = await engine.chat_with_rag(QUESTION, top_k=3)

        assert result.text == "I don't know."

    async def test_citations_disabled(self, engine_factory, cfg, manual):
        engine = engine_factory(
            chat_handler(ANSWER), settings=cfg.model_copy(update={"SHOW_CITATIONS": False})
        )
        engine.ingest_file(manual)

        result = await engine.chat_with_rag(QUESTION, top_k=3)

        assert result.text == ANSWER

    async def test_failed_chat_recorded(self, engine_factory, manual):
        requests = []
        engine = engine_factory(chat_handler(ANSWER, requests, status_code=500))
        engine.ingest_file(manual)

        result = await engine.chat_with_rag(QUESTION)

        assert not result.ok
        assert result.status == 500
        assert result.text == ""
        assert len(requests) == 3
        assert engine.history.entries()[0].status == 500

    async def test_stream_delivers_citations_last(self, engine_factory, manual):
        body = "".join(
            f"data: {json.dumps({'choices': [{'delta': {'content': part}}]})}\n\n"
            for part in ("The warranty covers", " parts and labor.")
        ) + "data: [DONE]\n\n"
        engine = engine_factory(lambda req: httpx.Response(200, text=body))
        engine.ingest_file(manual)
        deltas = []

        result = await engine.chat_with_rag_stream(QUESTION, deltas.append, top_k=3)

        assert deltas[:2] == ["The warranty covers", " parts and labor."]
        assert deltas[-1] == "\n\nSources:\n1) manual.txt (lines 1-3)"
        assert "".join(deltas) == result.text
        assert engine.history.entries()[0].raw == ANSWER


class TestChatCallbacks:
    """Test the callback forms of chat."""

    async def test_on_complete_fires_once(self, engine_factory, manual):
        completions = []
        engine = engine_factory(chat_handler(ANSWER))
        engine.ingest_file(manual)

        returned = await engine.chat_with_rag_async(QUESTION, completions.append, top_k=3)

        assert completions == [returned]
        assert returned.ok

    async def test_stream_callback_form(self, engine_factory, manual):
        body = f"data: {json.dumps({'choices': [{'delta': {'content': ANSWER}}]})}\n\n"
        engine = engine_factory(lambda req: httpx.Response(200, text=body))
        engine.ingest_file(manual)
        deltas, completions = [], []

        await engine.chat_with_rag_stream_async(QUESTION, deltas.append, completions.append, top_k=3)

        assert len(completions) == 1
        assert "".join(deltas) == completions[0].text

    async def test_cancel(self, engine_factory, manual):
        async def slow(req):
            await asyncio.sleep(5)
            return json_response({})

        completions = []
        engine = engine_factory(slow)
        engine.ingest_file(manual)

        handle = engine.chat_with_rag_async(QUESTION, completions.append)
        await asyncio.sleep(0.05)
        handle.cancel()
        await handle

        assert completions == [ChatResult("", CANCELLED_STATUS, "", [])]
        assert engine.history.entries() == []

    async def test_unexpected_error_reported(self, engine, manual):
        engine.ingest_file(manual)
        engine.client.chat = AsyncMock(side_effect=RuntimeError("boom"))
        completions = []

        await engine.chat_with_rag_async(QUESTION, completions.append)

        assert len(completions) == 1
        assert completions[0].status == FAILED_STATUS


class TestStats:
    """Test engine statistics."""

    async def test_stats(self, engine_factory, manual):
        engine = engine_factory(chat_handler(ANSWER))
        engine.ingest_file(manual)
        await engine.chat_with_rag(QUESTION)

        stats = engine.get_stats()

        assert stats["document_count"] == 1
        assert stats["history_entries"] == 1
        assert stats["provider"] == "openai"
