import threading

import pytest

from boltllama.engine.cancellation import CANCELLED_MESSAGE, CancellationToken
from boltllama.engine.errors import GenerationCancelledError


def test_token_starts_clear_and_stays_set():
    token = CancellationToken()
    assert token.cancelled is False
    token.raise_if_cancelled()

    token.cancel()
    token.cancel()
    assert token.cancelled is True
    assert repr(token) == "CancellationToken(cancelled=True)"


def test_raise_if_cancelled_carries_user_message():
    token = CancellationToken()
    token.cancel()
    with pytest.raises(GenerationCancelledError) as excinfo:
        token.raise_if_cancelled()
    assert excinfo.value.message == CANCELLED_MESSAGE
    assert excinfo.value.code == "cancelled"


def test_cancel_from_another_thread_is_observed():
    token = CancellationToken()
    t = threading.Thread(target=token.cancel)
    t.start()
    t.join()
    assert token.cancelled
