"""Delivery of operating-system signals to a queue."""

from __future__ import annotations

import queue
import signal


class SignalNotifier:
    """Routes the given signals into a queue holding at most one pending signal."""

    def __init__(self, *signals):
        self.signals = signals

    def notify(self) -> queue.Queue:
        """Install handlers for the signals and return the queue they are put on."""
        channel: queue.Queue = queue.Queue(maxsize=1)

        def handler(signum, _frame) -> None:
            if not channel.full():
                channel.put_nowait(signal.Signals(signum))

        for sig in self.signals:
            signal.signal(sig, handler)
        return channel