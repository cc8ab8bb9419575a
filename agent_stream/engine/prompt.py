"""Prompt composition: retrieved passages + instructions + chat history."""

from __future__ import annotations

from typing import Any, Sequence

from pydantic import BaseModel

from agent_stream.engine.models import RetrievalResult, ThreadItem


class ComposedPrompt(BaseModel):
    augmented_query: str
    rag_prompt_block: str


def compose(
    query: str,
    retrieved: Sequence[RetrievalResult],
    instruction_template: str,
    *,
    separator: str = "\n\n",
) -> ComposedPrompt:
    """Merge the query with ranked passages under the instruction template.

    Passages keep their ranked order (most relevant first); with nothing
    retrieved the block is just the template.
    """
    parts = [instruction_template.strip()]
    parts.extend(result.text for result in retrieved)
    block = separator.join(parts)
    return ComposedPrompt(
        augmented_query=f"{query.strip()}\n{block}",
        rag_prompt_block=block,
    )


def build_core_messages(
    previous_items: Sequence[ThreadItem],
    query: str,
    image_attachment: str | None = None,
) -> list[dict[str, Any]]:
    """Rebuild the chat history the generation service expects."""
    messages: list[dict[str, Any]] = []
    for item in previous_items:
        if item.query:
            messages.append({"role": "user", "content": item.query})
        if item.answer and item.answer.text:
            messages.append({"role": "assistant", "content": item.answer.text})

    if image_attachment:
        messages.append({
            "role": "user",
            "content": [
                {"type": "text", "text": query},
                {"type": "image", "image": image_attachment},
            ],
        })
    else:
        messages.append({"role": "user", "content": query})
    return messages
