"""Phase clock - records phase boundaries of one transfer.

Boundaries are offsets in seconds from the moment the clock starts. They are
fed from two places: the network backend (DNS, connect, TLS) and httpx's
"trace" request extension (response headers received). When a phase occurs
more than once (redirects, auth round-trips) the latest occurrence wins, so
the reported timing describes the final exchange the way curl does.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from kurl.models import Timing

logger = logging.getLogger(__name__)

DNS = "dns"
CONNECT = "connect"
TLS = "tls_handshake"
FIRST_BYTE = "time_to_first_byte"
TOTAL = "total"

PHASES = (DNS, CONNECT, TLS, FIRST_BYTE, TOTAL)

# httpcore names its trace events "<component>.<step>.<started|complete|failed>"
_HEADERS_RECEIVED = "receive_response_headers.complete"


class PhaseClock:
    """Collects phase boundaries and turns them into a Timing.

    ``in_progress`` names the network step currently underway ("dns",
    "connect" or "tls_handshake"), or None. It stays set when a step fails,
    which is what the executor uses to classify the failure.
    """

    def __init__(self, clock: Callable[[], float] = time.perf_counter) -> None:
        self._clock = clock
        self._start = clock()
        self._marks: dict[str, float] = {}
        self.in_progress: str | None = None

    def elapsed(self) -> float:
        return self._clock() - self._start

    def begin(self, phase: str) -> None:
        self.in_progress = phase

    def mark(self, phase: str) -> None:
        if phase not in PHASES:
            raise ValueError(f"unknown phase {phase!r}")
        self._marks[phase] = self.elapsed()
        if self.in_progress == phase:
            self.in_progress = None

    def marked(self, phase: str) -> bool:
        return phase in self._marks

    def trace(self, event_name: str, info: dict[str, Any]) -> None:
        """Callback for httpx's "trace" request extension."""
        if event_name.endswith(_HEADERS_RECEIVED):
            self.mark(FIRST_BYTE)

    def snapshot(self) -> Timing:
        """Build a Timing from the marks recorded so far.

        A phase that never happened (plain HTTP has no TLS, a reused
        connection has no DNS or connect) carries the previous boundary.
        Values are clamped so the sequence never goes backwards; with
        redirects a late TLS mark can otherwise follow an early one.
        """
        values: dict[str, float] = {}
        previous = 0.0
        for phase in PHASES:
            value = max(self._marks.get(phase, previous), previous)
            values[phase] = value
            previous = value
        timing = Timing(**values)
        logger.debug(
            "timing: dns=%.4f connect=%.4f tls=%.4f ttfb=%.4f total=%.4f",
            timing.dns,
            timing.connect,
            timing.tls_handshake,
            timing.time_to_first_byte,
            timing.total,
        )
        return timing
