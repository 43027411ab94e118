"""
Error classes that sdcadm may produce.

Every error carries a machine readable ``code``, a human ``message``, an
optional wrapped ``cause`` and the ``exit_status`` used when it reaches the
process boundary. Callers branch on ``code`` rather than on the concrete class.
"""

import logging
import threading
from contextlib import contextmanager
from enum import Enum
from typing import Any, Iterator, List, Optional, Sequence

from .clients import ClientError

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Stable codes for the error taxonomy."""
    INTERNAL = "Internal"
    USAGE = "Usage"
    UPDATE = "Update"
    SDC_CLIENT = "SDCClient"
    MULTI = "MultiError"


class SdcAdmError(Exception):
    """Base sdcadm error. Not raised directly; use one of the variants below."""

    code: ErrorCode = ErrorCode.INTERNAL
    exit_status: int = 1

    def __init__(self, message: str, cause: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause
        if isinstance(cause, BaseException):
            self.__cause__ = cause

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value!r}, message={self.message!r})"


class InternalError(SdcAdmError):
    """Programming or environment fault."""

    code = ErrorCode.INTERNAL
    exit_status = 1


class UsageError(SdcAdmError):
    """Bad input from the caller."""

    code = ErrorCode.USAGE
    exit_status = 2


class UpdateError(SdcAdmError):
    """Update workflow failure: precondition, timeout or remote task failure."""

    code = ErrorCode.UPDATE
    exit_status = 2


class SDCClientError(SdcAdmError):
    """
    Wrap an error returned by one of the SDC API clients.

    The cause must expose a ``body`` mapping following the SDC API error
    convention: ``{"code": ..., "message": ..., "errors": [...]}``. ``code`` is
    optional (SAPI does not always send one) but ``message`` is required.
    """

    code = ErrorCode.SDC_CLIENT
    exit_status = 1

    def __init__(self, cause: Any, client_name: str) -> None:
        body = getattr(cause, "body", None)
        if not isinstance(body, dict) or not isinstance(body.get("message"), str):
            raise TypeError(
                f"{client_name} client error must expose a string body['message'], got {cause!r}"
            )
        remote_code = body.get("code")
        if remote_code is not None and not isinstance(remote_code, str):
            raise TypeError(f"{client_name} client error body['code'] must be a string")

        code_extra = f" ({remote_code})" if remote_code else ""
        message = body["message"]
        for field_error in body.get("errors") or []:
            message += f"\n    {field_error.get('field')}: {field_error.get('code')}"
            if field_error.get("message"):
                message += f": {field_error['message']}"

        super().__init__(f"{client_name} client error{code_extra}: {message}", cause=cause)
        self.client_name = client_name
        self.remote_code = remote_code


class MultiError(SdcAdmError):
    """Several errors collected while fanning work out, reported as one."""

    code = ErrorCode.MULTI
    exit_status = 1

    def __init__(self, errors: Sequence[SdcAdmError]) -> None:
        if not errors:
            raise ValueError("MultiError requires at least one error")
        lines = [f"multiple ({len(errors)}) errors"]
        for err in errors:
            lines.append(f"    error ({err.code.value}): {err.message}")
        super().__init__("\n".join(lines), cause=errors[0])
        self.errors: List[SdcAdmError] = list(errors)


class ErrorCollector:
    """Thread-safe, ordered collection of per-item failures during a fan-out."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._errors: List[SdcAdmError] = []

    def append(self, error: SdcAdmError) -> None:
        with self._lock:
            self._errors.append(error)
        logger.error("%s", error.message)

    @property
    def errors(self) -> List[SdcAdmError]:
        with self._lock:
            return list(self._errors)

    def __len__(self) -> int:
        with self._lock:
            return len(self._errors)

    def __bool__(self) -> bool:
        return len(self) > 0

    def raise_if_any(self) -> None:
        """Raise a MultiError wrapping every collected failure, if there are any."""
        errors = self.errors
        if errors:
            raise MultiError(errors)


@contextmanager
def sdc_client_errors(client_name: Optional[str] = None) -> Iterator[None]:
    """
    Convert any ClientError raised inside the block into SDCClientError.

    Without an explicit ``client_name`` the name recorded on the ClientError
    is used.
    """
    try:
        yield
    except ClientError as exc:
        name = client_name or exc.client_name or "sdc"
        raise SDCClientError(exc, name) from exc
