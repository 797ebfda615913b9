"""ChatML prompt construction for document questions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Callable, List, Sequence

from localrag.models import ConversationMessage, SearchResult

SYSTEM_TEMPLATE = (
    "You are a helpful, knowledgeable AI assistant. Today is {today}. Your knowledge was last updated "
    "in early 2024, so for questions about recent events, let the user know you may not have the latest "
    "information."
)
DOCUMENTS_SUFFIX = " You have access to the user's documents below. Use them to provide accurate, thorough answers."


@dataclass(frozen=True)
class PromptBuilderConfig:
    """Configuration for prompt construction."""

    max_chunks: int = 8
    max_chunk_words: int = 1000
    history_messages: int = 3


def truncate_words(text: str, max_words: int) -> str:
    words = text.split()
    if len(words) <= max_words:
        return text
    return " ".join(words[:max_words]) + "..."


def format_conversation(messages: Sequence[ConversationMessage], limit: int) -> str:
    """Render the last ``limit`` messages as ``role: content`` paragraphs."""

    if limit <= 0:
        return ""
    return "".join(f"{message.role}: {message.content}\n\n" for message in list(messages)[-limit:])


class PromptBuilder:
    """Builds ChatML prompts from a question, retrieved chunks and recent conversation."""

    def __init__(
        self,
        config: PromptBuilderConfig | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._config = config or PromptBuilderConfig()
        self._today = today

    def select_chunks(self, results: Sequence[SearchResult]) -> List[SearchResult]:
        return list(results[: self._config.max_chunks])

    def build_context(self, results: Sequence[SearchResult]) -> str:
        if not results:
            return ""
        return "".join(
            f"[{result.file_name}]\n{truncate_words(result.text, self._config.max_chunk_words)}\n\n"
            for result in self.select_chunks(results)
        )

    def system_message(self, with_documents: bool) -> str:
        today = self._today().strftime("%B %d, %Y")
        message = SYSTEM_TEMPLATE.format(today=today)
        return message + DOCUMENTS_SUFFIX if with_documents else message

    def build(
        self,
        question: str,
        results: Sequence[SearchResult] = (),
        history: Sequence[ConversationMessage] = (),
    ) -> str:
        documents = self.build_context(results)
        conversation = format_conversation(history, self._config.history_messages)
        user = ""
        if documents:
            user += f"My documents:\n\n{documents}\n"
        if conversation:
            user += f"Conversation so far:\n{conversation}\n"
        user += question
        return (
            f"<|im_start|>system\n{self.system_message(bool(documents))}<|im_end|>\n"
            f"<|im_start|>user\n{user}<|im_end|>\n"
            "<|im_start|>assistant\n"
        )


__all__ = ["PromptBuilder", "PromptBuilderConfig", "format_conversation", "truncate_words"]
