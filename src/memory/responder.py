from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from src.llms.llm import describe_llm, get_llm_by_type

from .cache import ConversationHistory
from .context_builder import ContextPackBuilder
from .models import ContextPack
from .policy import resolve_context_policy
from .store import SQLiteThreadStore
from .summarizer import format_thread_state_for_context, message_text

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant taking part in a chat conversation. "
    "Use the conversation context below to stay consistent with what has already been said."
)


def _default_llm() -> BaseChatModel:
    return get_llm_by_type("basic")


@dataclass(slots=True)
class GeneratedReply:
    content: str
    run_id: Optional[str]
    context: Optional[ContextPack]


class ReplyGenerator:
    """Generation path: context pack -> language model -> reply, bookkept as a Run.

    A trigger that already has a succeeded run is skipped without calling
    the language model again.
    """

    def __init__(
        self,
        store: Optional[SQLiteThreadStore],
        builder: ContextPackBuilder,
        llm_provider: Optional[Callable[[], BaseChatModel]] = None,
        history: Optional[ConversationHistory] = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ) -> None:
        self._store = store
        self._builder = builder
        self._llm_provider = llm_provider or _default_llm
        self._history = history
        self._system_prompt = system_prompt

    async def generate_reply(
        self,
        thread_id: str,
        trigger_source_id: Optional[str] = None,
        *,
        policy_overrides: Optional[dict[str, Any]] = None,
    ) -> Optional[GeneratedReply]:
        if trigger_source_id and await self._already_processed(trigger_source_id):
            logger.info("Trigger %s already answered; skipping generation", trigger_source_id)
            return None

        state = await self._load_state(thread_id)
        policy = resolve_context_policy(state, overrides=policy_overrides)
        pack = await self._builder.build_context_pack(thread_id, trigger_source_id, policy)
        messages = self._build_messages(thread_id, pack, state)

        try:
            llm = self._llm_provider()
        except Exception as exc:  # noqa: BLE001
            logger.warning("LLM unavailable for reply generation: %s", exc)
            return None

        provider, model = describe_llm(llm)
        run_id = await self._start_run(thread_id, trigger_source_id, pack, provider, model)

        try:
            ai_message = await llm.ainvoke(messages)
            content = message_text(ai_message).strip()
            if not content:
                raise ValueError("empty response from language model")
        except Exception as exc:  # noqa: BLE001
            logger.warning("Reply generation failed for thread %s: %s", thread_id, exc)
            await self._close_run(run_id, error=str(exc))
            return None

        await self._close_run(run_id, response={"content": content})
        return GeneratedReply(content=content, run_id=run_id, context=pack)

    async def _already_processed(self, trigger_source_id: str) -> bool:
        if self._store is None:
            return False
        try:
            return await self._store.has_processed_trigger(trigger_source_id)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to check run history for trigger %s", trigger_source_id)
            return False

    async def _load_state(self, thread_id: str) -> dict[str, Any]:
        if self._store is None:
            return {}
        try:
            thread = await self._store.get_thread(thread_id)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to load thread state for %s", thread_id)
            return {}
        return thread.state if thread else {}

    def _build_messages(
        self, thread_id: str, pack: Optional[ContextPack], state: dict[str, Any]
    ) -> list[BaseMessage]:
        system = self._system_prompt
        state_block = format_thread_state_for_context(state)
        if state_block:
            system += f"\n\n{state_block.rstrip()}"
        messages: list[BaseMessage] = []
        if pack is not None and pack.transcript:
            system += f"\n\nConversation context:\n{pack.transcript}"
        elif pack is None and self._history is not None:
            # Persistent context failed; fall back to the short-term turn cache.
            for role, text in self._history.merged_turns(thread_id):
                messages.append(AIMessage(content=text) if role == "assistant" else HumanMessage(content=text))

        trigger = pack.trigger_message if pack is not None else None
        if trigger is not None:
            messages.append(HumanMessage(content=f"{trigger.author_name}: {trigger.content}"))
        elif not messages or isinstance(messages[-1], AIMessage):
            messages.append(HumanMessage(content="Continue the conversation."))
        return [SystemMessage(content=system), *messages]

    async def _start_run(
        self,
        thread_id: str,
        trigger_source_id: Optional[str],
        pack: Optional[ContextPack],
        provider: Optional[str],
        model: Optional[str],
    ) -> Optional[str]:
        if self._store is None:
            return None
        trigger = pack.trigger_message if pack is not None else None
        try:
            return await self._store.start_run(
                thread_id,
                trigger_item_id=trigger.item_id if trigger else None,
                trigger_source_id=trigger_source_id,
                provider=provider,
                model=model,
                selected_item_ids=pack.selected_item_ids if pack is not None else None,
                token_estimate=pack.token_estimate if pack is not None else None,
            )
        except Exception:  # noqa: BLE001 - bookkeeping must not block the reply
            logger.exception("Failed to start run for thread %s", thread_id)
            return None

    async def _close_run(
        self, run_id: Optional[str], *, response: Optional[dict[str, Any]] = None, error: Optional[str] = None
    ) -> None:
        if self._store is None or run_id is None:
            return
        try:
            if error is not None:
                await self._store.fail_run(run_id, error)
            else:
                await self._store.complete_run(run_id, response)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to close run %s", run_id)
