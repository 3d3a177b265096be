"""
Metrics
=======

Prometheus instruments for the transport layer.  The instruments live on the
default registry and are updated unconditionally; whether they are exposed
is up to the host process, which can call :func:`start_metrics_server` once
(the CLI does so when ``AUTHLINK_METRICS`` is enabled).

Metrics
-------

* ``authlink_renewals_total{outcome=...}`` – access token renewals, by
  ``success`` / ``failure``.
* ``authlink_session_terminations_total`` – fatal authentication failures
  that actually cleared the session (duplicates are not counted).
* ``authlink_reconnect_attempts_total`` – automatic realtime reconnects.
* ``authlink_frames_dropped_total`` – inbound frames discarded as malformed.
* ``authlink_realtime_connected`` – open realtime connections.
"""

from __future__ import annotations

import logging

from prometheus_client import Counter, Gauge, start_http_server

logger = logging.getLogger(__name__)

RENEWALS = Counter(
    "authlink_renewals_total",
    "Access token renewals by outcome",
    labelnames=["outcome"],
)
SESSION_TERMINATIONS = Counter(
    "authlink_session_terminations_total",
    "Sessions ended by a fatal authentication failure",
)
RECONNECT_ATTEMPTS = Counter(
    "authlink_reconnect_attempts_total",
    "Automatic realtime reconnection attempts",
)
FRAMES_DROPPED = Counter(
    "authlink_frames_dropped_total",
    "Inbound realtime frames dropped because they could not be parsed",
)
REALTIME_CONNECTED = Gauge(
    "authlink_realtime_connected",
    "Number of realtime channels currently open",
)


def start_metrics_server(port: int) -> None:
    """Expose the default registry over HTTP on ``port``."""
    try:
        start_http_server(port)
    except OSError as exc:
        # Likely already started by the host process
        logger.warning("Failed to start Prometheus server on port %d: %s", port, exc)
        return
    logger.info("Prometheus metrics exposed on port %d", port)
