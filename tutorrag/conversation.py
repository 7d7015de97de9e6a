"""Conversation management: grounded prompts, generation and persistence."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import openai
from openai import OpenAI

from .config import config
from .errors import (
    NotFoundOrDeniedError,
    UpstreamUnavailableError,
    ValidationError,
)
from .models import (
    ChatResult,
    Conversation,
    Message,
    RetrievalContext,
    SourceFilters,
    estimate_token_count,
    validate_class_id,
)

if TYPE_CHECKING:
    from .chat_store import ChatStore
    from .retrieval import RetrievalOrchestrator

logger = config.get_logger(__name__)

GROUNDED_SYSTEM_PROMPT = (
    "You are an AI tutor helping a student understand their class materials. "
    "Use the following sources to answer the student's question accurately and "
    "helpfully. Cite sources when relevant.\n\n{context}"
)
UNGROUNDED_SYSTEM_PROMPT = (
    "You are an AI tutor. Help the student with their question to the best of "
    "your ability."
)
EMPTY_REPLY = "Sorry, I could not generate a response."


def build_system_prompt(context_text: str) -> str:
    """Pick the grounded or plain tutor instruction.

    Returns:
        The system instruction for the generation call.
    """
    if context_text:
        return GROUNDED_SYSTEM_PROMPT.format(context=context_text)
    return UNGROUNDED_SYSTEM_PROMPT


def build_messages(
    system_prompt: str,
    history: list[Message],
    message: str,
) -> list[dict[str, str]]:
    """Assemble ``[system, *history, user]`` for chat completions.

    Returns:
        Role-tagged messages in generation order.
    """
    return [
        {"role": "system", "content": system_prompt},
        *({"role": turn.role.value, "content": turn.content} for turn in history),
        {"role": "user", "content": message},
    ]


class ConversationManager:
    """Runs one chat turn end to end for a user's class conversation."""

    def __init__(
        self,
        retrieval: RetrievalOrchestrator,
        chat_store: ChatStore,
        client: OpenAI | None = None,
        openai_api_key: str | None = None,
    ) -> None:
        """Initialize ConversationManager.

        Args:
            retrieval: Orchestrator producing grounding context and citations.
            chat_store: Durable store for conversations and messages.
            client: OpenAI client used for generation.
            openai_api_key: OpenAI API key, used when no client is given.
        """
        self.retrieval = retrieval
        self.chat_store = chat_store
        if client is None:
            default_headers = config.get_api_headers()
            client = OpenAI(
                api_key=openai_api_key or config.get_openai_api_key(),
                base_url=config.OPENAI_BASE_URL,
                default_headers=default_headers or None,
                timeout=config.CHAT_TIMEOUT_SECONDS,
                max_retries=0,
            )
        self.client = client
        self.history_limit = config.CHAT_HISTORY_LIMIT

    def _resolve_conversation(
        self,
        user_id: str,
        class_id: str,
        conversation_id: str | None,
    ) -> Conversation | None:
        """Return the caller's existing conversation, or None to start a new one."""
        if not conversation_id:
            return None

        conversation = self.chat_store.get_conversation(
            conversation_id, user_id, class_id
        )
        if conversation is None:
            logger.info(
                "Conversation %s not available to user %s; starting a new one",
                conversation_id,
                user_id,
            )
        return conversation

    def _generate(self, messages: list[dict[str, Any]]) -> tuple[str, int]:
        """Call the generation service.

        Returns:
            The reply text and the completion token count.

        Raises:
            UpstreamUnavailableError: If the generation call fails.
        """
        try:
            response = self.client.chat.completions.create(
                model=config.CHAT_MODEL,
                messages=messages,  # pyright: ignore[reportArgumentType]
                max_tokens=config.CHAT_MAX_TOKENS,
                temperature=config.CHAT_TEMPERATURE,
            )
        except openai.OpenAIError as exc:
            logger.exception("Generation request failed")
            msg = "Generation service unavailable"
            raise UpstreamUnavailableError(msg) from exc

        answer = response.choices[0].message.content if response.choices else None
        answer = answer.strip() if answer else EMPTY_REPLY
        if response.usage is not None:
            completion_tokens = response.usage.completion_tokens
        else:
            completion_tokens = estimate_token_count(answer)
        return answer, completion_tokens

    def chat(  # noqa: PLR0913
        self,
        user_id: str,
        class_id: str,
        message: str,
        conversation_id: str | None = None,
        source_filters: SourceFilters | None = None,
    ) -> ChatResult:
        """Answer a student's message grounded in their class materials.

        The reply counts as delivered only once both messages are stored.

        Returns:
            ChatResult for the persisted assistant message.

        Raises:
            UpstreamUnavailableError: If generation fails; nothing is stored.
            ValidationError: If an identifier or the message is missing.
            PersistenceError: If a durable write fails.
        """
        if not user_id:
            msg = "user_id is required"
            raise ValidationError(msg)
        validate_class_id(class_id)
        if not message or not message.strip():
            msg = "message must not be empty"
            raise ValidationError(msg)

        logger.info("Processing message for user %s in class %s", user_id, class_id)

        conversation = self._resolve_conversation(user_id, class_id, conversation_id)
        history = (
            self.chat_store.recent_messages(conversation.id, self.history_limit)
            if conversation is not None
            else []
        )

        context: RetrievalContext = self.retrieval.retrieve(
            class_id, message, source_filters
        )
        for position, result in enumerate(context.results, start=1):
            logger.info(
                "  Source %d: %s %s (score: %.4f)",
                position,
                result.chunk.source_type,
                result.resolved_title,
                result.relevance_score,
            )

        messages = build_messages(
            build_system_prompt(context.context_text), history, message
        )
        answer, completion_tokens = self._generate(messages)

        if conversation is None:
            conversation = self.chat_store.create_conversation(user_id, class_id)
        self.chat_store.add_user_message(
            conversation.id, message, estimate_token_count(message)
        )
        assistant_message, conversation = self.chat_store.add_assistant_message(
            conversation.id, answer, context.citations, completion_tokens
        )

        logger.info(
            "Stored turn in conversation %s (%d messages)",
            conversation.id,
            conversation.message_count,
        )
        return ChatResult(
            conversation_id=conversation.id,
            message_id=assistant_message.id,
            content=answer,
            citations=list(context.citations),
            degraded=context.degraded,
        )

    def get_conversation(
        self,
        conversation_id: str,
        user_id: str,
    ) -> tuple[Conversation, list[Message]]:
        """Fetch an owned conversation with its messages in order.

        Returns:
            The conversation and its messages.

        Raises:
            NotFoundOrDeniedError: If missing or owned by another user.
        """
        conversation = self.chat_store.get_conversation(conversation_id, user_id)
        if conversation is None:
            msg = "Conversation not found or access denied"
            raise NotFoundOrDeniedError(msg)
        return conversation, self.chat_store.list_messages(conversation.id)

    def list_conversations(self, user_id: str, class_id: str) -> list[Conversation]:
        return self.chat_store.list_conversations(user_id, class_id)

    def delete_conversation(self, conversation_id: str, user_id: str) -> None:
        """Delete an owned conversation.

        Raises:
            NotFoundOrDeniedError: If missing or owned by another user.
        """
        if not self.chat_store.delete_conversation(conversation_id, user_id):
            msg = "Conversation not found or access denied"
            raise NotFoundOrDeniedError(msg)
        logger.info("Deleted conversation %s", conversation_id)
