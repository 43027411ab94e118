"""
Polling of asynchronous remote work until it settles.

The generic ``poll_until`` helper drives any query function; the two wrappers
below cover the cases the agent update needs: a CNAPI task resource, and the
agent list a server reports once an agent has been replaced.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

from .errors import UpdateError, sdc_client_errors
from .models import TaskStatus

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 5
DEFAULT_POLL_MAX_ATTEMPTS = 60

R = TypeVar("R")


def format_budget(seconds: float) -> str:
    """Render a time budget the way operators read it: ``5m``, ``90s``."""
    if seconds >= 60 and seconds % 60 == 0:
        return f"{int(seconds // 60)}m"
    return f"{seconds:g}s"


def poll_until(
    resource_id: str,
    query: Callable[[str], R],
    is_done: Callable[[R], bool],
    *,
    description: str,
    interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    max_attempts: int = DEFAULT_POLL_MAX_ATTEMPTS,
    client_name: Optional[str] = None,
    progress: Optional[Callable[..., None]] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> R:
    """
    Query ``resource_id`` every ``interval`` seconds until it reaches a terminal state.

    Args:
        resource_id: Identifier handed to ``query``
        query: Client call returning the current status record
        is_done: Returns True on terminal success and False while pending;
            raises UpdateError on terminal failure
        description: Human label used in log and timeout messages
        interval: Seconds between queries
        max_attempts: Number of queries before giving up
        client_name: Name used when wrapping client errors (defaults to the
            name the client recorded on the error)
        progress: Optional progress sink notified of a timeout
        sleep: Sleep function (injectable for simulated time)
        clock: Monotonic clock used to report elapsed time

    Returns:
        The status record that satisfied ``is_done``.

    Raises:
        SDCClientError: the query itself failed
        UpdateError: terminal failure reported by ``is_done``, or timeout
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

    started = clock()

    def _attempt() -> Tuple[bool, R]:
        with sdc_client_errors(client_name):
            record = query(resource_id)
        return is_done(record), record

    def _log_pending(retry_state: RetryCallState) -> None:
        logger.debug(
            "Waiting for %s: attempt %d/%d still pending",
            description,
            retry_state.attempt_number,
            max_attempts,
        )

    retryer = Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_fixed(interval),
        retry=retry_if_result(lambda outcome: not outcome[0]),
        before_sleep=_log_pending,
        sleep=sleep,
    )

    try:
        _, record = retryer(_attempt)
    except RetryError:
        elapsed = clock() - started
        message = (
            f"Timeout({format_budget(interval * max_attempts)}) waiting for {description} "
            f"(gave up after {max_attempts} attempts, {elapsed:.0f}s elapsed)"
        )
        if progress is not None:
            progress("%s", message)
        raise UpdateError(message)

    return record


def task_error_message(task: Dict[str, Any]) -> Optional[str]:
    """Return the error message CNAPI recorded on a failed task, if any."""
    history = task.get("history") or []
    if not history:
        return None
    event = history[0].get("event") or {}
    error = event.get("error")
    if isinstance(error, dict):
        return error.get("message")
    if isinstance(error, str):
        return error
    return None


def wait_for_task(cnapi: Any, task_id: str, **poll_options: Any) -> Dict[str, Any]:
    """Poll a CNAPI task until it is ``complete``; a ``failure`` raises UpdateError."""

    def _is_done(task: Dict[str, Any]) -> bool:
        status = TaskStatus.from_wire(task.get("status"))
        if status is TaskStatus.COMPLETE:
            return True
        if status is TaskStatus.FAILURE:
            message = f"Task {task_id} failed"
            error = task_error_message(task)
            if error:
                message += f" with error: {error}"
            raise UpdateError(message)
        if status is None:
            logger.debug(
                "Task %s reported unrecognized status %r; polling again",
                task_id,
                task.get("status"),
            )
        return False

    return poll_until(
        task_id,
        cnapi.get_task,
        _is_done,
        description=f"task {task_id}",
        **poll_options,
    )


def wait_for_agent_image(
    cnapi: Any,
    server_uuid: str,
    agent_name: str,
    image_uuid: str,
    **poll_options: Any,
) -> Dict[str, Any]:
    """Poll a server until the named agent reports running ``image_uuid``."""

    def _is_done(server: Dict[str, Any]) -> bool:
        for agent in server.get("agents") or []:
            if agent.get("name") == agent_name:
                return agent.get("image_uuid") == image_uuid
        return False

    return poll_until(
        server_uuid,
        cnapi.get_server,
        _is_done,
        description=f"{agent_name} update on server {server_uuid}",
        **poll_options,
    )
