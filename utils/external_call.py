"""Bounded-time calls to external collaborators"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Callable, Optional

from config import Config
from utils.exceptions import ExternalServiceUnavailable, RiftError

logger = logging.getLogger(__name__)

# Shared pool so a hung collaborator never blocks the calling request past its timeout
_executor = ThreadPoolExecutor(max_workers=16, thread_name_prefix="ExternalCall")


def guarded_call(
    service: str,
    fn: Callable[..., Any],
    *args,
    timeout: Optional[float] = None,
    **kwargs,
) -> Any:
    """
    Run ``fn`` with a hard timeout.

    Timeouts and unexpected adapter failures become ExternalServiceUnavailable
    (retryable). Domain errors raised by the adapter pass through unchanged.
    """
    limit = timeout if timeout is not None else Config.EXTERNAL_CALL_TIMEOUT_SECONDS
    future = _executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=limit)
    except FutureTimeout:
        future.cancel()
        logger.error(f"⏱️ EXTERNAL_TIMEOUT: {service} exceeded {limit}s")
        raise ExternalServiceUnavailable(service, f"timed out after {limit}s")
    except RiftError:
        raise
    except Exception as e:
        logger.error(f"❌ EXTERNAL_CALL_FAILED: {service}: {type(e).__name__}: {e}")
        raise ExternalServiceUnavailable(service, type(e).__name__) from e
