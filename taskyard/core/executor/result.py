# taskyard/core/executor/result.py
from __future__ import annotations

from typing import Any, Literal, overload

from taskyard.core.executor.errors import TaskWorkerError


class _Unset:
    pass


_UNSET = _Unset()


class JobResult:
    """
    Outcome of one execution: exactly one of ok / err is set.

    ``ok`` holds the JSON-ready mapping stored as the task result,
    ``err`` the normalized error that drives settlement.
    """

    __slots__ = ('_data',)
    _data: tuple[Literal[True], dict[str, Any]] | tuple[Literal[False], TaskWorkerError]

    @overload
    def __init__(self, *, ok: dict[str, Any]) -> None: ...

    @overload
    def __init__(self, *, err: TaskWorkerError) -> None: ...

    def __init__(
        self,
        *,
        ok: dict[str, Any] | _Unset = _UNSET,
        err: TaskWorkerError | _Unset = _UNSET,
    ) -> None:
        if not isinstance(ok, _Unset) and not isinstance(err, _Unset):
            raise ValueError('JobResult cannot have both ok and err')
        if not isinstance(ok, _Unset):
            self._data = (True, ok)
        elif not isinstance(err, _Unset):
            self._data = (False, err)
        else:
            raise ValueError('JobResult must have exactly one of ok / err')

    def is_ok(self) -> bool:
        return self._data[0]

    def is_err(self) -> bool:
        return not self._data[0]

    @property
    def ok(self) -> dict[str, Any] | None:
        match self._data:
            case (True, value):
                return value
            case (False, _):
                return None

    @property
    def err(self) -> TaskWorkerError | None:
        match self._data:
            case (False, error):
                return error
            case (True, _):
                return None

    def unwrap(self) -> dict[str, Any]:
        match self._data:
            case (True, value):
                return value
            case (False, _):
                raise ValueError('Result is not ok - check is_ok() first')

    def unwrap_err(self) -> TaskWorkerError:
        match self._data:
            case (False, error):
                return error
            case (True, _):
                raise ValueError('Result is not error - check is_err() first')

    def __repr__(self) -> str:
        if self.is_ok():
            return f'JobResult(ok={self.ok!r})'
        return f'JobResult(err={self.err!r})'
