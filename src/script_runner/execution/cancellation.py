from __future__ import annotations

import threading

import structlog

logger = structlog.get_logger(__name__)

_PENDING = "pending"
_CANCELLED = "cancelled"
_COMPLETED = "completed"


class CancellationController:
    """Race-free hand-off between a caller's cancel request and run completion.

    Exactly one of `cancel()` and `complete()` wins; the loser is a no-op.
    The supervisor observes the request through `wait()` and performs the
    process-tree termination itself.

    Example:
        ```python
        controller = CancellationController()
        handle = supervisor.start(code, cancellation=controller)
        controller.cancel()
        ```
    """

    def __init__(self) -> None:
        """Create a controller in the pending state.

        Example:
            ```python
            controller = CancellationController()
            ```
        """
        self._lock = threading.Lock()
        self._state = _PENDING
        self._requested = threading.Event()

    def cancel(self) -> bool:
        """Request cancellation; True only for the call that took effect.

        Example:
            ```python
            if controller.cancel():
                print("stopping")
            ```
        """
        with self._lock:
            if self._state != _PENDING:
                logger.debug("cancel_ignored", state=self._state)
                return False
            self._state = _CANCELLED
            self._requested.set()
        logger.info("cancel_requested")
        return True

    def complete(self) -> bool:
        """Claim natural completion; False when cancellation already won.

        Example:
            ```python
            natural = controller.complete()
            ```
        """
        with self._lock:
            if self._state == _CANCELLED:
                return False
            self._state = _COMPLETED
            return True

    @property
    def cancelled(self) -> bool:
        """Return True once cancellation took effect.

        Example:
            ```python
            if controller.cancelled:
                ...
            ```
        """
        with self._lock:
            return self._state == _CANCELLED

    @property
    def event(self) -> threading.Event:
        """Return the event set when cancellation is requested.

        Example:
            ```python
            channel.send(chunk, abort=controller.event)
            ```
        """
        return self._requested

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancellation is requested or `timeout` elapses.

        Example:
            ```python
            if controller.wait(0.05):
                terminate_process_tree(proc)
            ```
        """
        return self._requested.wait(timeout)
