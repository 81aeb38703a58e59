# taskyard/core/executor/registry.py
from __future__ import annotations
import asyncio
import inspect
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, MutableMapping, Optional, TypeVar
from pydantic import BaseModel, ValidationError
from pydantic_core import PydanticSerializationError, to_jsonable_python
from taskyard.core.errors import ErrorCode, RegistryError
from taskyard.core.executor.errors import TaskErrorCode, TaskWorkerError, to_task_worker_error
from taskyard.core.executor.result import JobResult
from taskyard.core.logging import get_logger
from taskyard.core.models.records import TaskRecord

logger = get_logger('executor')

F = TypeVar('F', bound=Callable[..., Any])


class NotRegistered(RegistryError, KeyError):
    """Raised when a job kind is not present in the registry.

    Inherits from KeyError so MutableMapping.__contains__ works correctly
    (it catches KeyError to implement the ``in`` operator).
    """

    def __init__(self, job_kind: str) -> None:
        RegistryError.__init__(
            self,
            message=f"job kind '{job_kind}' not registered",
            code=ErrorCode.JOB_KIND_NOT_REGISTERED,
            notes=[f"requested job kind: '{job_kind}'"],
            help_text='register a handler with @registry.job(...) before enqueueing this kind',
        )
        self.job_kind = job_kind


class DuplicateJobKindError(RegistryError):
    """Raised when a job kind is registered more than once within one registry."""

    def __init__(self, job_kind: str, context: str = '') -> None:
        super().__init__(
            message=f"duplicate job kind '{job_kind}'",
            code=ErrorCode.JOB_KIND_DUPLICATE,
            notes=[context] if context else [],
            help_text='each job kind must map to exactly one handler',
        )
        self.job_kind = job_kind


@dataclass(frozen=True)
class JobHandler:
    """A registered handler: called as ``fn(payload, task)``.

    When ``payload_model`` is set, ``payload`` is the validated model;
    otherwise it is the raw payload dict.
    """

    kind: str
    fn: Callable[..., Any]
    payload_model: Optional[type[BaseModel]] = None

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.fn)


def _validate_kind(job_kind: Any) -> str:
    if not isinstance(job_kind, str) or not job_kind.strip():
        raise RegistryError(
            message='invalid job kind',
            code=ErrorCode.JOB_KIND_INVALID,
            notes=[f'got: {job_kind!r}'],
            help_text='job kinds are non-blank strings, e.g. "EXPORT_EPISODE"',
        )
    return job_kind.strip()


def _source_of(fn: Callable[..., Any]) -> str | None:
    code = getattr(fn, '__code__', None)
    if code is None:
        return None
    return f'{code.co_filename}:{code.co_firstlineno}'


def _normalize_output(value: Any) -> dict[str, Any]:
    """Coerce handler output to a JSON object in JSON mode.

    Raises PydanticSerializationError for values with no JSON form.
    """
    if value is None:
        return {}
    if isinstance(value, Mapping):
        value = dict(value)
    data = to_jsonable_python(value)
    if isinstance(data, dict):
        return data
    return {'value': data}


class ExecutorRegistry(MutableMapping[str, JobHandler]):
    """Registry mapping job kind -> handler.

    Tracks source locations to detect duplicate registrations:
    - Same kind + same source: silently skip (re-import scenario)
    - Same kind + different source: raise DuplicateJobKindError
    """

    def __init__(self, initial: Dict[str, JobHandler] | None = None) -> None:
        self._data: Dict[str, JobHandler] = dict(initial or {})
        self._sources: Dict[str, str] = {}

    def __getitem__(self, key: str) -> JobHandler:
        try:
            return self._data[key]
        except KeyError:
            raise NotRegistered(key)

    def __setitem__(self, key: str, value: JobHandler) -> None:
        """Discourage direct assignment; enforce uniqueness like register()."""
        if key in self._data:
            raise DuplicateJobKindError(key, 'detected via direct assignment')
        self._data[_validate_kind(key)] = value

    def __delitem__(self, key: str) -> None:
        del self._data[key]
        self._sources.pop(key, None)

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def register(
        self,
        job_kind: str,
        fn: Callable[..., Any],
        payload_model: Optional[type[BaseModel]] = None,
        *,
        source: str | None = None,
    ) -> JobHandler:
        """Insert a handler under ``job_kind``.

        Raises:
            RegistryError: If the kind is blank.
            DuplicateJobKindError: If the kind is already registered from a different source.
        """
        kind = _validate_kind(job_kind)
        source = source or _source_of(fn)
        if kind in self._data:
            existing_source = self._sources.get(kind)
            if existing_source and source and existing_source == source:
                return self._data[kind]
            raise DuplicateJobKindError(kind, 'a handler for this kind already exists')
        handler = JobHandler(kind=kind, fn=fn, payload_model=payload_model)
        self._data[kind] = handler
        if source:
            self._sources[kind] = source
        return handler

    def job(
        self,
        job_kind: str,
        *,
        payload_model: Optional[type[BaseModel]] = None,
    ) -> Callable[[F], F]:
        """Decorator form of register(); returns the function unchanged.

        Usage:
            @registry.job('EXPORT_EPISODE', payload_model=ExportPayload)
            async def export_episode(payload: ExportPayload, task: TaskRecord) -> dict:
                ...
        """

        def decorator(fn: F) -> F:
            self.register(job_kind, fn, payload_model)
            return fn

        return decorator

    def kinds(self) -> list[str]:
        return sorted(self._data)

    async def execute(self, task: TaskRecord) -> JobResult:
        """Run the handler for ``task.job_kind`` and normalize the outcome.

        Never raises for handler failures: every error comes back as
        ``JobResult(err=...)`` with a task error code. Cancellation propagates.
        """
        context = {'taskId': task.id, 'jobKind': task.job_kind}
        handler = self._data.get(task.job_kind)
        if handler is None:
            return JobResult(
                err=TaskWorkerError(
                    TaskErrorCode.PAYLOAD_UNSUPPORTED,
                    f'Unsupported jobKind: {task.job_kind}',
                    context,
                )
            )

        raw_payload = task.payload_json
        if raw_payload is None:
            raw_payload = {}
        if not isinstance(raw_payload, Mapping):
            return JobResult(
                err=TaskWorkerError(
                    TaskErrorCode.PAYLOAD_INVALID,
                    'payload_json must be an object',
                    context,
                )
            )

        payload: Any = dict(raw_payload)
        if handler.payload_model is not None:
            try:
                payload = handler.payload_model.model_validate(payload)
            except ValidationError as exc:
                return JobResult(
                    err=TaskWorkerError(
                        TaskErrorCode.PAYLOAD_INVALID,
                        f'{task.job_kind} payload is invalid',
                        {
                            **context,
                            'errors': exc.errors(
                                include_url=False, include_context=False, include_input=False
                            ),
                        },
                    )
                )

        try:
            if handler.is_async:
                output = await handler.fn(payload, task)
            else:
                output = await asyncio.to_thread(handler.fn, payload, task)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = to_task_worker_error(exc, f'{task.job_kind} failed', context)
            if not isinstance(exc, TaskWorkerError):
                logger.debug(f'Handler for {task.job_kind} raised {type(exc).__name__}: {exc}')
            return JobResult(err=error)

        try:
            return JobResult(ok=_normalize_output(output))
        except (PydanticSerializationError, ValueError) as exc:
            return JobResult(
                err=TaskWorkerError(
                    TaskErrorCode.EXECUTION_FAILED,
                    f'{task.job_kind} returned a result that is not JSON serializable',
                    {**context, 'outputType': type(output).__name__, 'detail': str(exc)},
                )
            )
