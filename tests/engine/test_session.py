import pytest

from boltllama.engine.chat_types import ChatTurn
from boltllama.engine.errors import GenerationError
from boltllama.engine.session import InferenceSession
from boltllama.engine.types import SamplingParams


class _TemplateTokenizer:
    """Tokenizer with a chat template that returns a BatchEncoding-like dict."""

    chat_template = "{{ fake }}"

    def encode(self, text):
        return [ord(ch) for ch in text]

    def apply_chat_template(self, messages, *, add_generation_prompt, tokenize):
        assert tokenize is True
        ids = []
        for msg in messages:
            ids.append(1)
            ids.extend(ord(ch) for ch in msg["content"])
            ids.append(2)
        if add_generation_prompt:
            ids.append(3)
        return {"input_ids": [ids]}


class _RecordingAdapter:
    def __init__(self, tokenizer, reply_ids=()):
        self.tokenizer = tokenizer
        self.reply_ids = list(reply_ids)
        self.calls = []
        self.sessions = {}

    def create_session(self, *, cache_id, max_seq_len, chunk_size):
        self.calls.append(("create", cache_id, max_seq_len, chunk_size))
        self.sessions[cache_id] = 0

    def append_to_session(self, *, cache_id, input_ids):
        self.calls.append(("append", list(input_ids)))
        self.sessions[cache_id] += len(input_ids)

    def stream_generate_session(self, *, cache_id, sampling, max_new_tokens):
        for token_id in self.reply_ids[:max_new_tokens]:
            yield token_id
            self.sessions[cache_id] += 1

    def close_session(self, cache_id):
        self.calls.append(("close", cache_id))
        self.sessions.pop(cache_id, None)

    def get_session_info(self, cache_id):
        return {"current_pos": self.sessions[cache_id], "max_seq_len": 128}


def _run_turn(session, user, max_tokens=16):
    budget = session.begin_turn(user, max_tokens)
    generated = list(session.stream_generate(SamplingParams(), budget))
    text = "".join(chr(t) for t in generated)
    session.end_turn(user, text, generated)
    return budget, text


def test_session_creates_kv_session_with_config_sizes():
    adapter = _RecordingAdapter(_TemplateTokenizer())
    session = InferenceSession(adapter, context_size=128, batch_size=32)
    assert adapter.calls == [("create", session.cache_id, 128, 32)]
    assert session.cache_id.startswith("session-")


def test_chat_template_path_flattens_batch_encoding():
    adapter = _RecordingAdapter(_TemplateTokenizer())
    session = InferenceSession(adapter, context_size=128, batch_size=32)

    ids = session.encode_conversation([ChatTurn("user", "hi")], add_generation_prompt=True)
    assert ids == [1, ord("h"), ord("i"), 2, 3]


def test_budget_is_capped_by_remaining_context():
    adapter = _RecordingAdapter(_TemplateTokenizer())
    session = InferenceSession(adapter, context_size=16, batch_size=8)

    budget = session.begin_turn("hello", 100)
    # prompt = 1 + 5 + 1 + 1 = 8 tokens; one slot is kept free.
    assert budget == 16 - 8 - 1


def test_prompt_too_long_raises_and_commits_nothing():
    adapter = _RecordingAdapter(_TemplateTokenizer())
    session = InferenceSession(adapter, context_size=8, batch_size=8)

    with pytest.raises(GenerationError, match="Prompt too long"):
        session.begin_turn("far too long", 4)
    assert session.turns == []
    assert not any(call[0] == "append" for call in adapter.calls)


def test_diverged_cache_is_rebuilt():
    # The template closes each message with token 2, which the decoder never
    # produced, so the committed ids stop being a prefix.
    adapter = _RecordingAdapter(_TemplateTokenizer(), reply_ids=[ord("o"), ord("k")])
    session = InferenceSession(adapter, context_size=128, batch_size=32)

    _run_turn(session, "a")
    adapter.calls.clear()
    _run_turn(session, "b")

    kinds = [call[0] for call in adapter.calls]
    assert kinds == ["close", "create", "append"]
    full = adapter.calls[-1][1]
    assert full == session.encode_conversation(
        [ChatTurn("user", "a"), ChatTurn("assistant", "ok"), ChatTurn("user", "b")],
        add_generation_prompt=True,
    )


def test_close_is_idempotent_and_blocks_further_turns():
    adapter = _RecordingAdapter(_TemplateTokenizer())
    session = InferenceSession(adapter, context_size=128, batch_size=32)

    session.close()
    session.close()
    assert [c[0] for c in adapter.calls].count("close") == 1
    with pytest.raises(GenerationError, match="closed"):
        session.begin_turn("hi", 4)
