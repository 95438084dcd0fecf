"""
RAG orchestration.

Composes chunking, embedding, the vector store, the LLM client, citation
attribution and the history log into the ingestion and chat flows:

    retrieve -> build context prompt -> chat (streamed or not)
             -> attach citations -> persist history -> return / callback

Every mutating store operation loads the store fresh and saves it in full.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, NamedTuple, Optional, Union

from citation.extractor import CitationExtractor, CitationSource
from config import Settings, settings
from core.embeddings import ProviderEmbedder, Vectorizer, get_vectorizer
from core.llm import ChatReply, LLMClient
from core.retrieval import Retriever
from core.schema import ChunkOptions, Document, Message, RetrievalResult
from document_management.indexer import IngestQueue, IngestTask
from document_management.loader import DocumentLoader
from document_management.processor import DocumentProcessor, PreparedDocument, document_key
from memory.history import ChatHistoryLog
from monitoring.metrics import document_count, error_counter, track_query_metrics
from storage import get_vector_store
from storage.vector_store import VectorStoreInterface
from transport.http import CANCELLED_STATUS, FAILED_STATUS, RequestHandle, deliver
from utils.fileio import display_names
from utils.text import clean_text, line_at

logger = logging.getLogger(__name__)

CONTEXT_PROMPT_HEADER = (
    "Use only the context below to answer the question. If the context does "
    "not contain the answer, say that you don't know."
)

ChunkOptsLike = Union[ChunkOptions, Mapping[str, Any], None]


class ChatResult(NamedTuple):
    """
    Outcome of a RAG chat.

    Attributes:
        text: Reply shown to the user, citations included.
        status: HTTP status or transport sentinel.
        raw: Raw model reply as persisted in the history.
        results: Retrieved chunks the prompt was built from.
    """

    text: str
    status: int
    raw: str
    results: List[RetrievalResult]

    @property
    def ok(self) -> bool:
        return self.status == 200


class RevectorizeReport(NamedTuple):
    """Summary of a revectorization run."""

    documents: int
    chunks: int
    fallbacks: int
    saved: bool


class RAGEngine:
    """
    Provider-agnostic RAG engine.

    Attributes:
        cfg: Engine settings.
        store: Vector store backend.
        processor: Loads, cleans and splits documents.
        history: Chat history log.
        client: LLM client for chat and provider embeddings.
        vectorizer: Local hashing vectorizer.
        embedder: Provider embedder with local fallback.
        retriever: Top-K retriever.
        citations: Citation builder.
        queue: Serial ingestion queue.
    """

    def __init__(
        self,
        cfg: Optional[Settings] = None,
        store: Optional[VectorStoreInterface] = None,
        loader: Optional[DocumentLoader] = None,
        history: Optional[ChatHistoryLog] = None,
        client: Optional[LLMClient] = None,
    ) -> None:
        self.cfg: Settings = cfg or settings
        self.store: VectorStoreInterface = store or get_vector_store(self.cfg.STORE_PATH)
        self.processor = DocumentProcessor(loader, self.cfg)
        self.history = history or ChatHistoryLog(self.cfg.HISTORY_PATH)
        self.client = client or LLMClient(self.cfg)

        self.vectorizer: Vectorizer = get_vectorizer(self.cfg.EMBEDDING_DIM)
        self.embedder = ProviderEmbedder(self.client, self.vectorizer)
        self.retriever = Retriever(self.store, self.cfg, self.vectorizer, self.embedder)
        self.citations = CitationExtractor(
            self.cfg.CITATION_MAX_FILES, self.cfg.CITATION_MATCH_THRESHOLD
        )
        self.queue = IngestQueue(self._ingest_queued, self.cfg.INGEST_TICK_MS)

        logger.info(
            f"RAG engine ready (provider={self.cfg.PROVIDER}, store={self.cfg.STORE_PATH})"
        )

    # =========================================================================
    # Ingestion
    # =========================================================================

    def _store_prepared(self, prepared: PreparedDocument, vectorizer: Optional[Vectorizer] = None) -> bool:
        store = self.store.load()
        self.store.add_chunks(store, prepared.path, prepared.chunks, vectorizer, prepared.doc_meta)
        saved = self.store.save(store)
        document_count.set(len(store.docs))
        return saved

    def ingest_file(
        self,
        path: Union[str, os.PathLike],
        chunk_opts: ChunkOptsLike = None,
        vectorizer: Optional[Vectorizer] = None,
    ) -> bool:
        """
        Ingest a document with local (or supplied) embeddings.

        Args:
            path: Document path.
            chunk_opts: Optional chunk size / overlap / pad overrides.
            vectorizer: Embeds chunk texts. Defaults to the local vectorizer.

        Returns:
            True if the document was stored.
        """
        prepared = self.processor.prepare(path, chunk_opts)
        if prepared is None:
            return False
        return self._store_prepared(prepared, vectorizer or self.vectorizer)

    async def ingest_file_with_provider_embeddings(
        self,
        path: Union[str, os.PathLike],
        chunk_opts: ChunkOptsLike = None,
    ) -> bool:
        """
        Ingest a document with provider embeddings.

        Chunks are embedded in one batch request where the provider supports
        it, otherwise one request per chunk. Any chunk the provider fails to
        embed gets a local vector. Documents whose content is already stored
        are mirrored without calling the provider.

        Returns:
            True if the document was stored.
        """
        prepared = self.processor.prepare(path, chunk_opts)
        if prepared is None:
            return False

        if self._already_stored(prepared):
            logger.info(f"{prepared.path} unchanged; skipping provider embedding")
            return self._store_prepared(prepared)

        vectors = await self.embedder.embed_texts([c.text for c in prepared.chunks])
        chunks = [
            chunk.model_copy(update={"vector": vector})
            for chunk, vector in zip(prepared.chunks, vectors)
        ]
        return self._store_prepared(prepared._replace(chunks=chunks))

    def _already_stored(self, prepared: PreparedDocument) -> bool:
        store = self.store.load()
        return self.store.find_twin(store, prepared.doc_meta["contentHash"]) is not None

    async def _ingest_queued(self, path: str) -> bool:
        if self.cfg.USE_PROVIDER_EMBEDDINGS:
            return await self.ingest_file_with_provider_embeddings(path)
        return self.ingest_file(path)

    def ingest_files_async(
        self,
        paths: Iterable[Union[str, os.PathLike]],
        on_done: Optional[Callable[[IngestTask], Any]] = None,
    ) -> IngestTask:
        """
        Queue documents (directories expanded) for serial ingestion.

        Uses provider embeddings when settings.USE_PROVIDER_EMBEDDINGS is set.

        Returns:
            Handle exposing progress, cancel() and await.
        """
        return self.queue.submit(self.processor.expand_paths(paths), on_done)

    async def revectorize_store(self) -> RevectorizeReport:
        """
        Re-embed every stored chunk with the provider.

        Chunks are embedded per document in stored order, keeping their ids.
        A document whose provider call fails gets local vectors; the
        remaining documents continue.

        Returns:
            Counts of documents, chunks and locally embedded chunks.
        """
        store = self.store.load()
        by_id = {chunk.id: chunk for chunk in store.items}
        seen = set()
        documents = chunks = 0
        fallbacks_before = self.embedder.fallbacks

        for path, doc in list(store.docs.items()):
            ids = [cid for cid in doc.chunk_ids if cid in by_id and cid not in seen]
            if not ids:
                continue
            texts = [by_id[cid].text for cid in ids]

            try:
                vectors = await self.embedder.embed_texts(texts)
            except Exception as e:
                error_counter.labels(type=type(e).__name__).inc()
                logger.error(f"Provider embedding failed for {path}: {e}; using local vectors")
                vectors = [self.vectorizer(t) for t in texts]
                self.embedder.fallbacks += len(texts)

            for cid, vector in zip(ids, vectors):
                by_id[cid].vector = vector
            seen.update(ids)
            documents += 1
            chunks += len(ids)
            await asyncio.sleep(self.cfg.INGEST_TICK_MS / 1000)

        saved = self.store.save(store)
        report = RevectorizeReport(documents, chunks, self.embedder.fallbacks - fallbacks_before, saved)
        logger.info(
            f"Revectorized {report.chunks} chunk(s) in {report.documents} document(s), "
            f"{report.fallbacks} local fallback(s)"
        )
        return report

    def revectorize_store_async(
        self,
        on_done: Optional[Callable[[Optional[RevectorizeReport]], Any]] = None,
    ) -> RequestHandle:
        """Callback form of `revectorize_store`; `on_done(None)` on cancel."""
        return self._spawn(self.revectorize_store, on_done, None)

    def remove_document(self, path: Union[str, os.PathLike]) -> bool:
        """Remove a document and its chunks from the store."""
        store = self.store.load()
        removed = self.store.remove_doc(store, document_key(path))
        if removed:
            self.store.save(store)
            document_count.set(len(store.docs))
        return removed

    def list_documents(self) -> Dict[str, Document]:
        return self.store.list_docs(self.store.load())

    # =========================================================================
    # Retrieval
    # =========================================================================

    def query(self, prompt: str, top_k: Optional[int] = None) -> List[RetrievalResult]:
        """Local-vector top-K retrieval."""
        return self.retriever.retrieve(prompt, top_k)

    async def query_async(
        self,
        prompt: str,
        top_k: Optional[int] = None,
        use_provider_embeddings: Optional[bool] = None,
    ) -> List[RetrievalResult]:
        """Top-K retrieval, with provider query embeddings when enabled."""
        return await self.retriever.aretrieve(prompt, top_k, use_provider_embeddings)

    def locate_sources(self, results: List[RetrievalResult]) -> List[CitationSource]:
        """
        Line positions of retrieved chunks.

        Line numbers come from the re-loaded, cleaned document. A document
        that can no longer be read falls back to line numbers counted within
        the chunk itself.
        """
        texts: Dict[str, Optional[str]] = {}
        sources: List[CitationSource] = []

        for result in results:
            chunk = result.chunk
            if chunk.path not in texts:
                texts[chunk.path] = self.processor.load_text(chunk.path)
            text = texts[chunk.path]

            if text:
                start_line, end_line = line_at(text, chunk.start), line_at(text, chunk.end)
            else:
                start_line, end_line = 1, chunk.text.count("\n") + 1
            sources.append(CitationSource(chunk.path, chunk.text, start_line, end_line))

        return sources

    def build_context_prompt(
        self,
        prompt: str,
        results: List[RetrievalResult],
        sources: Optional[List[CitationSource]] = None,
    ) -> str:
        """
        Build the single user message sent to the model.

        Args:
            prompt: User question.
            results: Retrieved chunks.
            sources: Pre-computed line positions for `results`.

        Returns:
            Instruction, numbered sources with line ranges, and the question.
        """
        sources = sources if sources is not None else self.locate_sources(results)

        labels = display_names(s.path for s in sources)
        sections = []
        for i, source in enumerate(sources, 1):
            sections.append(
                f"Source {i}: {labels[source.path]} (lines {source.start_line}-{source.end_line})\n{source.text}"
            )
        context = "\n\n".join(sections) if sections else "(no matching passages)"

        question = clean_text(prompt).strip()
        return f"{CONTEXT_PROMPT_HEADER}\n\nContext:\n{context}\n\nQuestion: {question}"

    # =========================================================================
    # Chat
    # =========================================================================

    async def _prepare_chat(self, prompt: str, top_k: Optional[int]):
        results = await self.query_async(prompt, top_k)
        sources = self.locate_sources(results)
        message = Message(role="user", content=self.build_context_prompt(prompt, results, sources))
        return results, sources, message

    def _finish(
        self,
        prompt: str,
        reply: ChatReply,
        results: List[RetrievalResult],
        sources: List[CitationSource],
    ) -> ChatResult:
        text = reply.text
        if reply.status == 200 and self.cfg.SHOW_CITATIONS:
            text = self.citations.append_citations(text, sources)

        if not self.history.append(prompt, reply.status, reply.raw):
            logger.warning("Chat history could not be written")
        return ChatResult(text, reply.status, reply.raw, results)

    @track_query_metrics
    async def chat_with_rag(self, prompt: str, top_k: Optional[int] = None) -> ChatResult:
        """
        Answer a question from the indexed documents.

        Args:
            prompt: User question.
            top_k: Number of chunks in the context.

        Returns:
            ChatResult with the cited reply.
        """
        results, sources, message = await self._prepare_chat(prompt, top_k)
        reply = await self.client.chat([message])
        return self._finish(prompt, reply, results, sources)

    @track_query_metrics
    async def chat_with_rag_stream(
        self,
        prompt: str,
        on_delta: Optional[Callable[[str], Any]] = None,
        top_k: Optional[int] = None,
        on_retry: Optional[Callable[[int], Any]] = None,
    ) -> ChatResult:
        """
        Streamed variant of `chat_with_rag`.

        `on_delta` receives the reply as it arrives; the citation block, if
        any, is delivered as one final fragment.
        """
        results, sources, message = await self._prepare_chat(prompt, top_k)
        reply = await self.client.chat_stream([message], on_delta, on_retry)
        result = self._finish(prompt, reply, results, sources)

        if result.text != reply.text:
            deliver(on_delta, result.text[len(reply.text.rstrip()):])
        return result

    def chat_with_rag_async(
        self,
        prompt: str,
        on_complete: Optional[Callable[[ChatResult], Any]],
        top_k: Optional[int] = None,
    ) -> RequestHandle:
        """Callback form of `chat_with_rag`; `on_complete` fires exactly once."""
        return self._spawn(
            lambda: self.chat_with_rag(prompt, top_k),
            on_complete,
            ChatResult("", CANCELLED_STATUS, "", []),
        )

    def chat_with_rag_stream_async(
        self,
        prompt: str,
        on_delta: Optional[Callable[[str], Any]],
        on_complete: Optional[Callable[[ChatResult], Any]],
        top_k: Optional[int] = None,
    ) -> RequestHandle:
        """Callback form of `chat_with_rag_stream`; `on_complete` fires exactly once."""
        return self._spawn(
            lambda: self.chat_with_rag_stream(prompt, on_delta, top_k),
            on_complete,
            ChatResult("", CANCELLED_STATUS, "", []),
        )

    def _spawn(
        self,
        operation: Callable[[], Awaitable[Any]],
        on_done: Optional[Callable[[Any], Any]],
        cancelled_result: Any,
    ) -> RequestHandle:
        """Run `operation` as a task and report its outcome exactly once."""

        async def runner():
            try:
                result = await operation()
            except asyncio.CancelledError:
                logger.info("Background operation cancelled")
                result = cancelled_result
            except Exception as e:
                error_counter.labels(type=type(e).__name__).inc()
                logger.error(f"Background operation failed: {e}", exc_info=True)
                result = (
                    cancelled_result._replace(status=FAILED_STATUS)
                    if isinstance(cancelled_result, ChatResult) else None
                )
            deliver(on_done, result)
            return result

        return RequestHandle(asyncio.ensure_future(runner()))

    def get_stats(self) -> Dict[str, object]:
        """Store statistics plus the number of history entries."""
        stats = dict(self.store.get_stats())
        stats["history_entries"] = len(self.history)
        stats["provider"] = self.cfg.PROVIDER
        return stats
