"""Background runner - execute a request without blocking the caller.

submit() starts a dedicated daemon thread per request and hands back a
concurrent.futures.Future that resolves to (Response, Timing) or to the
KurlError the transfer failed with.

Usage:
    future = submit(config)
    ...
    response, timing = future.result()
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, InvalidStateError

from kurl.executor import perform_request
from kurl.models import RequestConfig, Response, Timing

logger = logging.getLogger(__name__)


def _resolve(
    future: Future,
    result: tuple[Response, Timing] | None = None,
    error: BaseException | None = None,
) -> None:
    try:
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)
    except InvalidStateError:
        # Cancelled while the transfer was running; nobody wants the outcome.
        logger.debug("discarding result of a cancelled background request")


def _run(config: RequestConfig, future: Future) -> None:
    try:
        outcome = perform_request(config)
    except Exception as e:
        _resolve(future, error=e)
    else:
        _resolve(future, result=outcome)


def submit(config: RequestConfig) -> Future:
    """Run perform_request(config) on a new daemon thread.

    Cancelling the returned future only abandons the result: the transfer
    itself keeps going until it completes or hits its own timeout.
    """
    future: Future = Future()
    thread = threading.Thread(
        target=_run,
        args=(config, future),
        name=f"kurl-{config.method.lower()}",
        daemon=True,
    )
    thread.start()
    logger.debug("submitted %s %s on %s", config.method, config.url, thread.name)
    return future
