"""
completion.py

One-shot handoff of the flow result from the HTTP handler thread
to the waiting coordinator thread.
Part of oauth-tokengen - local OAuth2 authorization-code helper.
"""

from __future__ import annotations

import threading
from typing import Optional

from tokengen.types import FlowResult


class CompletionSignal:
    """
    Single-slot, single-use result channel.

    The first deliver() wins; every later call is rejected and leaves the
    stored result untouched. wait() may be called any number of times and
    always returns that same result once it is set.

    Example:
        signal = CompletionSignal()
        signal.deliver(Success(token))   # handler thread
        result = signal.wait()           # main thread
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._ready = threading.Event()
        self._result: Optional[FlowResult] = None

    def deliver(self, result: FlowResult) -> bool:
        """
        Store the flow result if nothing has been delivered yet.

        Args:
            result: Success(token) or Failure(error).

        Returns:
            True if this call delivered the result, False if the slot was taken.
        """
        with self._lock:
            if self._result is not None:
                return False
            self._result = result
        self._ready.set()
        return True

    def is_set(self) -> bool:
        """Return True once a result has been delivered."""
        return self._ready.is_set()

    def wait(self, timeout: Optional[float] = None) -> Optional[FlowResult]:
        """
        Block until a result is delivered.

        Args:
            timeout: Maximum seconds to wait. None waits forever.

        Returns:
            The delivered result, or None if the timeout expired first.
        """
        if not self._ready.wait(timeout):
            return None
        return self._result
