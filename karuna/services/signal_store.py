"""Latest-value store for life-signals, one entry per signal type."""

from typing import Optional

import structlog

from karuna.models.signal import Signal, SignalType

logger = structlog.get_logger(__name__)


class SignalStore:
    """Holds the most recent signal per type.

    Updates are last-write-wins by signal timestamp, not by arrival order, so
    out-of-order delivery from asynchronous collectors never regresses a
    value. Evaluation reads a ``snapshot()`` copy, so updates that arrive
    during a tick are only observed by the next one.
    """

    def __init__(self):
        self._signals: dict[SignalType, Signal] = {}

    def update(self, signal: Signal) -> bool:
        """Store a signal. Returns False if it is older than the current one."""
        current = self._signals.get(signal.type)
        if current is not None and signal.timestamp < current.timestamp:
            logger.debug(
                "signal_update_stale",
                signal_type=signal.type.value,
                received=signal.timestamp.isoformat(),
                current=current.timestamp.isoformat(),
            )
            return False

        self._signals[signal.type] = signal
        return True

    def get(self, signal_type: SignalType) -> Optional[Signal]:
        return self._signals.get(signal_type)

    def snapshot(self) -> dict[SignalType, Signal]:
        """Point-in-time deep copy of all current signals."""
        return {
            signal_type: signal.model_copy(deep=True)
            for signal_type, signal in self._signals.items()
        }

    def clear(self) -> None:
        self._signals.clear()

    def __len__(self) -> int:
        return len(self._signals)
