"""Inference session: one KV-cache session bound to an accumulating conversation.

The session keeps the committed conversation (list of turns) and the token ids
that are known to be resident in the adapter's KV cache. Each new turn appends
only the token delta when the cache is a clean prefix of the new conversation;
otherwise the cache is rebuilt from scratch.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Iterator

from .adapters.base import BaseAdapter
from .chat_types import ChatTurn
from .errors import GenerationError
from .types import SamplingParams

logger = logging.getLogger(__name__)


def _as_id_list(value: Any) -> list[int]:
    """Normalize tokenizer output (list, nested list, tensor, BatchEncoding) to a flat list of ints."""
    if isinstance(value, dict) or hasattr(value, "input_ids"):
        value = value["input_ids"] if isinstance(value, dict) else value.input_ids
    if hasattr(value, "tolist"):
        value = value.tolist()
    if value and isinstance(value[0], (list, tuple)):
        value = value[0]
    return [int(t) for t in value]


class InferenceSession:
    """A model handle plus its running conversational context.

    Created once per loaded model and closed before the model unloads.
    Not thread-safe; the engine's generation slot serializes access.
    """

    def __init__(self, adapter: BaseAdapter, *, context_size: int, batch_size: int) -> None:
        self._adapter = adapter
        self._context_size = int(context_size)
        self._batch_size = int(batch_size)
        self._cache_id = f"session-{uuid.uuid4().hex}"
        self._turns: list[ChatTurn] = []
        self._committed_ids: list[int] = []
        self._closed = False

        self._adapter.create_session(
            cache_id=self._cache_id,
            max_seq_len=self._context_size,
            chunk_size=self._batch_size,
        )

    @property
    def cache_id(self) -> str:
        return self._cache_id

    @property
    def turns(self) -> list[ChatTurn]:
        return list(self._turns)

    @property
    def context_size(self) -> int:
        return self._context_size

    def encode_conversation(self, turns: list[ChatTurn], *, add_generation_prompt: bool) -> list[int]:
        tokenizer = self._adapter.tokenizer
        messages = [{"role": t.role, "content": t.content} for t in turns]

        if getattr(tokenizer, "chat_template", None):
            ids = tokenizer.apply_chat_template(
                messages,
                add_generation_prompt=add_generation_prompt,
                tokenize=True,
            )
            return _as_id_list(ids)

        # Base models without a chat template: plain role-prefixed transcript.
        text = "".join(f"{t.role.capitalize()}: {t.content}\n\n" for t in turns)
        if add_generation_prompt:
            text += "Assistant: "
        return _as_id_list(tokenizer.encode(text))

    def begin_turn(self, user_content: str, max_tokens: int) -> int:
        """Prefill the conversation plus `user_content`; return the usable decode budget."""
        self._ensure_open()
        pending = self._turns + [ChatTurn(role="user", content=user_content)]
        input_ids = self.encode_conversation(pending, add_generation_prompt=True)

        if len(input_ids) >= self._context_size:
            raise GenerationError(
                f"Prompt too long: {len(input_ids)} tokens (context_size={self._context_size})."
            )

        info = self._adapter.get_session_info(self._cache_id)
        committed = self._committed_ids
        reusable = (
            bool(committed)
            and input_ids[: len(committed)] == committed
            and int(info.get("current_pos", -1)) == len(committed)
            and len(input_ids) > len(committed)
        )

        if reusable:
            delta = input_ids[len(committed) :]
            logger.debug("Session %s: appending %d new tokens", self._cache_id, len(delta))
        else:
            if int(info.get("current_pos", 0)) > 0:
                logger.debug("Session %s: cache diverged from conversation; rebuilding", self._cache_id)
                self._reset_cache()
            delta = input_ids

        self._adapter.append_to_session(cache_id=self._cache_id, input_ids=delta)
        self._committed_ids = list(input_ids)

        remaining = self._context_size - len(input_ids) - 1
        return max(0, min(int(max_tokens), remaining))

    def stream_generate(self, sampling: SamplingParams, max_new_tokens: int) -> Iterator[int]:
        self._ensure_open()
        return self._adapter.stream_generate_session(
            cache_id=self._cache_id,
            sampling=sampling,
            max_new_tokens=max_new_tokens,
        )

    def end_turn(self, user_content: str, assistant_text: str, generated_ids: list[int]) -> None:
        """Commit the user turn and the (possibly partial) assistant reply."""
        self._turns.append(ChatTurn(role="user", content=user_content))
        self._turns.append(ChatTurn(role="assistant", content=assistant_text))

        # The cache now holds prompt + every decoded token that was fed back.
        info = self._adapter.get_session_info(self._cache_id)
        current_pos = int(info.get("current_pos", 0))
        resident = self._committed_ids + list(generated_ids)
        self._committed_ids = resident[:current_pos]

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._turns.clear()
        self._committed_ids = []
        self._adapter.close_session(self._cache_id)

    def _reset_cache(self) -> None:
        self._adapter.close_session(self._cache_id)
        self._adapter.create_session(
            cache_id=self._cache_id,
            max_seq_len=self._context_size,
            chunk_size=self._batch_size,
        )
        self._committed_ids = []

    def _ensure_open(self) -> None:
        if self._closed:
            raise GenerationError("Inference session is closed.")
