"""agent_stream — streaming chat sessions with retrieval-augmented prompts.

Usage::

    from agent_stream import create_controller
    from agent_stream.engine.models import Caller

    controller = create_controller()
    session = await controller.submit("thread-1", "What is RAG?", Caller())
    async for item in session.updates():
        print(item.status, item.answer)
"""

from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()  # reads .env into os.environ (no-op if file missing)

from agent_stream.config import PROFILES, RELATED_DOCUMENTS, SessionConfig
from agent_stream.engine.controller import StreamSessionController
from agent_stream.engine.credits import HttpCreditClient, StaticCreditClient
from agent_stream.engine.generation import DemoGenerationClient, HttpGenerationClient
from agent_stream.engine.models import Caller, ChatMode, ThreadItem, ThreadItemStatus
from agent_stream.engine.store import InMemoryThreadItemStore
from agent_stream.memory.corpus import CorpusLoader, cache_for
from agent_stream.memory.corpus_memory import CorpusMemory
from agent_stream.memory.embedding import HashingEmbeddingClient, JinaEmbeddingClient
from agent_stream.memory.interface import Memory, NullMemory

__all__ = [
    "Caller",
    "ChatMode",
    "StreamSessionController",
    "ThreadItem",
    "ThreadItemStatus",
    "create_controller",
]


def create_controller(
    *,
    generation_base_url: str | None = None,
    jina_api_key: str | None = None,
    corpus_source: str | None = None,
    profile_name: str | None = None,
    use_demo_clients: bool | None = None,
    session_config: SessionConfig | None = None,
) -> StreamSessionController:
    """Wire all components and return a ready-to-use controller.

    Environment variables (all optional):
      GENERATION_BASE_URL — origin serving /api/completion and /api/messages/remaining
      JINA_API_KEY        — required for real embeddings
      EMBEDDING_MODEL     — default ``jina-embeddings-v3``
      CORPUS_SOURCE       — TSV path or URL; no retrieval when unset
      RAG_PROFILE         — ``related_documents`` (default) or ``cited_corpus``
      CORPUS_CACHE_DIR    — overrides the profile's file cache directory
      USE_DEMO_CLIENTS    — set to ``1`` to use the offline generation/credit clients
    """
    base_url = generation_base_url or os.environ.get("GENERATION_BASE_URL")
    api_key = jina_api_key or os.environ.get("JINA_API_KEY")
    source = corpus_source or os.environ.get("CORPUS_SOURCE")
    demo = (
        use_demo_clients
        if use_demo_clients is not None
        else os.environ.get("USE_DEMO_CLIENTS") == "1"
    )

    name = profile_name or os.environ.get("RAG_PROFILE", RELATED_DOCUMENTS.name)
    if name not in PROFILES:
        raise ValueError(f"Unknown RAG_PROFILE {name!r}; expected one of {sorted(PROFILES)}")
    profile = PROFILES[name]
    cache_dir = os.environ.get("CORPUS_CACHE_DIR")
    if cache_dir:
        profile = profile.model_copy(update={"cache_dir": cache_dir})

    # -- generation + credits --
    if demo or not base_url:
        generation_client = DemoGenerationClient()
        credit_client = StaticCreditClient()
    else:
        generation_client = HttpGenerationClient(base_url)
        credit_client = HttpCreditClient(base_url)

    # -- retrieval --
    memory: Memory = NullMemory()
    if source:
        if api_key:
            embedder = JinaEmbeddingClient(
                api_key, model=os.environ.get("EMBEDDING_MODEL", "jina-embeddings-v3")
            )
        else:
            embedder = HashingEmbeddingClient()
        loader = CorpusLoader(embedder, profile=profile, cache=cache_for(profile))
        memory = CorpusMemory(embedder, loader, source)

    return StreamSessionController(
        generation_client=generation_client,
        memory=memory,
        store=InMemoryThreadItemStore(),
        credit_client=credit_client,
        profile=profile,
        session_config=session_config,
    )
