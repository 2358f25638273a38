import threading
import time

import pytest

from app.services.guard import CallTimeout, call_with_timeout


def test_returns_value():
    assert call_with_timeout(lambda a, b=0: a + b, 2, b=3, timeout=1) == 5


def test_zero_timeout_calls_inline():
    seen = []
    call_with_timeout(lambda: seen.append(threading.current_thread().name), timeout=0)
    assert seen == [threading.current_thread().name]


def test_raises_call_timeout():
    with pytest.raises(CallTimeout) as exc:
        call_with_timeout(time.sleep, 1.0, timeout=0.05, label="slow provider")
    assert exc.value.label == "slow provider"
    assert "timed out" in str(exc.value)


def test_propagates_errors_from_the_call():
    def boom():
        raise ValueError("bad payload")

    with pytest.raises(ValueError, match="bad payload"):
        call_with_timeout(boom, timeout=1)
