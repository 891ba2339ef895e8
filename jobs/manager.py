"""In-process sync job registry keyed by job type."""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional

from errors import ConflictError, ValidationError

logger = logging.getLogger(__name__)


JOB_TYPE_GENRES = 'genres'
JOB_TYPE_COVERS = 'covers'
JOB_TYPE_RATINGS = 'ratings'
JOB_TYPE_LIBRARY = 'library'
JOB_TYPE_METADATA = 'metadata'
JOB_TYPE_CATALOG = 'catalog'
JOB_TYPE_HORIZONTAL_COVERS = 'horizontal-covers'
JOB_TYPES = (
    JOB_TYPE_GENRES,
    JOB_TYPE_COVERS,
    JOB_TYPE_HORIZONTAL_COVERS,
    JOB_TYPE_RATINGS,
    JOB_TYPE_LIBRARY,
    JOB_TYPE_METADATA,
    JOB_TYPE_CATALOG,
)
# Job types sharing a group never run at the same time.
EXCLUSIVE_GROUPS = ((JOB_TYPE_CATALOG, JOB_TYPE_LIBRARY),)

JobRunner = Callable[..., Optional[Mapping[str, Any]]]


def estimate_minutes_remaining(elapsed: float, completed: int, total: int) -> int:
    """Project the remaining minutes from the average time per completed item."""

    remaining = max(total - completed, 0)
    if completed <= 0 or remaining == 0:
        return 0
    return math.ceil(elapsed / completed * remaining / 60)


@dataclass
class JobState:
    job_type: str
    in_progress: bool = False
    progress: Optional[dict[str, Any]] = None
    result: Optional[dict[str, Any]] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    thread: Optional[threading.Thread] = field(default=None, repr=False)

    def to_dict(self, now: float) -> dict[str, Any]:
        elapsed = 0
        if self.started_at is not None:
            end = now if self.in_progress or self.finished_at is None else self.finished_at
            elapsed = max(int(end - self.started_at), 0)
        return {
            'inProgress': self.in_progress,
            'progress': dict(self.progress) if self.progress is not None else None,
            'result': dict(self.result) if self.result is not None else None,
            'elapsedSeconds': elapsed,
        }


class JobRegistry:
    """Run at most one job per job type.

    A job moves ``idle -> running -> idle``.  The last result stays readable
    until the next run of the same type starts, and a start request while a
    run is in flight raises :class:`errors.ConflictError` with its progress.
    Job types listed together in ``exclusive_groups`` also block each other.
    Progress snapshots are replaced as whole dicts so status reads never see
    a half-written update.
    """

    def __init__(
        self,
        job_types: Iterable[str] = JOB_TYPES,
        *,
        exclusive_groups: Iterable[Iterable[str]] = EXCLUSIVE_GROUPS,
        clock: Callable[[], float] | None = None,
        thread_factory: Callable[..., threading.Thread] | None = None,
    ) -> None:
        self._states = {job_type: JobState(job_type) for job_type in job_types}
        self._peers: dict[str, set[str]] = {job_type: set() for job_type in self._states}
        for group in exclusive_groups:
            members = [job_type for job_type in group if job_type in self._states]
            for job_type in members:
                self._peers[job_type].update(other for other in members if other != job_type)
        self._lock = threading.Lock()
        self._clock = clock or time.monotonic
        self._thread_factory = thread_factory or threading.Thread

    @property
    def job_types(self) -> tuple[str, ...]:
        return tuple(self._states)

    def _state(self, job_type: str) -> JobState:
        state = self._states.get(job_type)
        if state is None:
            raise ValidationError(
                f'Unknown job type: {job_type}. Must be one of: {", ".join(self._states)}'
            )
        return state

    def _check_idle(self, job_type: str) -> JobState:
        """Return the state of ``job_type``; the caller holds ``_lock``."""

        state = self._state(job_type)
        for candidate in (job_type, *sorted(self._peers[job_type])):
            running = self._states[candidate]
            if running.in_progress:
                raise ConflictError(
                    f'{candidate} job already in progress', progress=running.progress
                )
        return state

    def _begin(
        self, state: JobState, total: int, estimated_seconds: float, description: str | None
    ) -> None:
        state.in_progress = True
        state.result = None
        state.thread = None
        state.started_at = self._clock()
        state.finished_at = None
        state.progress = {
            'total': int(total),
            'completed': 0,
            'currentItem': description or 'Starting…',
            'estimatedMinutesRemaining': math.ceil(estimated_seconds / 60)
            if estimated_seconds
            else 0,
        }

    def is_running(self, job_type: str) -> bool:
        with self._lock:
            return self._state(job_type).in_progress

    def ensure_idle(self, job_type: str) -> None:
        """Raise :class:`ConflictError` if ``job_type`` or a peer is running."""

        with self._lock:
            self._check_idle(job_type)

    def status(self, job_type: str) -> dict[str, Any]:
        with self._lock:
            return self._state(job_type).to_dict(self._clock())

    def start(
        self,
        job_type: str,
        runner: JobRunner,
        *,
        total: int,
        estimated_seconds: float = 0,
        description: str | None = None,
    ) -> dict[str, Any]:
        """Launch ``runner(update_progress)`` on a background thread.

        Returns ``{total, estimatedSeconds}``; raises :class:`ConflictError`
        when a job of the same type is already running.
        """

        with self._lock:
            state = self._check_idle(job_type)
            self._begin(state, total, estimated_seconds, description)
            thread = self._thread_factory(
                target=self._run,
                args=(job_type, runner),
                name=f'sync-job-{job_type}',
                daemon=True,
            )
            state.thread = thread

        logger.info('Starting %s job for %s items', job_type, total)
        try:
            thread.start()
        except RuntimeError:
            with self._lock:
                state.in_progress = False
                state.thread = None
            raise
        return {'total': int(total), 'estimatedSeconds': int(math.ceil(estimated_seconds))}

    def run(
        self,
        job_type: str,
        runner: JobRunner,
        *,
        total: int,
        description: str | None = None,
    ) -> Any:
        """Run ``runner(update_progress)`` in the calling thread and return its result.

        The in-flight flag is held for the whole call, so a concurrent
        :meth:`run` or :meth:`start` of the same type (or a peer) raises
        :class:`ConflictError`.  Errors from ``runner`` are recorded as the
        job's result and re-raised.
        """

        with self._lock:
            state = self._check_idle(job_type)
            self._begin(state, total, 0, description)

        logger.info('Running %s job for %s items', job_type, total)
        try:
            result = runner(self._progress_callback(job_type))
        except Exception as exc:
            self._finish(job_type, {'error': str(exc)})
            raise
        outcome = _outcome(result)
        logger.info('%s job finished: %s', job_type, _summarize(outcome))
        self._finish(job_type, outcome)
        return result

    def _progress_callback(self, job_type: str) -> Callable[..., None]:
        def update_progress(
            current: int | None = None,
            total: int | None = None,
            message: str | None = None,
            *,
            data: Optional[Mapping[str, Any]] = None,
        ) -> None:
            with self._lock:
                state = self._states[job_type]
                previous = state.progress or {}
                total_value = int(total if total is not None else previous.get('total', 0))
                completed = int(current if current is not None else previous.get('completed', 0))
                elapsed = self._clock() - (state.started_at or self._clock())
                snapshot = {
                    'total': total_value,
                    'completed': completed,
                    'currentItem': message if message is not None else previous.get('currentItem'),
                    'estimatedMinutesRemaining': estimate_minutes_remaining(
                        elapsed, completed, total_value
                    ),
                }
                if data:
                    snapshot.update(dict(data))
                state.progress = snapshot

        return update_progress

    def _finish(self, job_type: str, outcome: dict[str, Any]) -> None:
        with self._lock:
            state = self._states[job_type]
            state.result = outcome
            state.finished_at = self._clock()
            state.in_progress = False

    def _run(self, job_type: str, runner: JobRunner) -> None:
        try:
            result = runner(self._progress_callback(job_type))
        except Exception as exc:
            logger.exception('%s job failed', job_type)
            outcome: dict[str, Any] = {'error': str(exc)}
        else:
            outcome = _outcome(result)
            logger.info('%s job finished: %s', job_type, _summarize(outcome))
        self._finish(job_type, outcome)

    def wait(self, job_type: str, timeout: float | None = None) -> bool:
        """Block until the current run finishes; returns ``False`` on timeout."""

        with self._lock:
            thread = self._state(job_type).thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()


def _outcome(result: Any) -> dict[str, Any]:
    if isinstance(result, Mapping):
        return dict(result)
    if result is None:
        return {}
    return {'result': result}


def _summarize(outcome: Mapping[str, Any]) -> str:
    keys = ('total', 'success', 'failed', 'skipped')
    parts = [f'{key}={outcome[key]}' for key in keys if key in outcome]
    return ', '.join(parts) or 'no summary'


__all__ = [
    'EXCLUSIVE_GROUPS',
    'JOB_TYPES',
    'JOB_TYPE_CATALOG',
    'JOB_TYPE_COVERS',
    'JOB_TYPE_GENRES',
    'JOB_TYPE_HORIZONTAL_COVERS',
    'JOB_TYPE_LIBRARY',
    'JOB_TYPE_METADATA',
    'JOB_TYPE_RATINGS',
    'JobRegistry',
    'JobState',
    'estimate_minutes_remaining',
]
