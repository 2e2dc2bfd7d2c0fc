"""Fan-out of independent SQL steps over a fixed number of workers."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar

from achilles.errors import DatabaseConnectionError, StepFailure, failure_from_exception
from achilles.session import Session, SessionManager

T = TypeVar("T")


class CancellationToken:
    """Shared flag checked by workers before each step."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class WorkItem:
    """One step: ``run`` receives the session it must use."""

    step_kind: str
    step_id: str
    run: Callable[[Session], None]
    shape: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.step_kind}:{self.step_id}"


@dataclass
class TaskOutcome:
    key: str
    ok: bool
    failure: Optional[StepFailure] = None
    cancelled: bool = False
    worker: Optional[int] = None
    elapsed: float = 0.0


def partition(items: Sequence[T], n: int) -> List[List[T]]:
    """Deal *items* round-robin into at most *n* non-empty queues."""
    n = max(1, min(n, len(items)))
    queues: List[List[T]] = [[] for _ in range(n)]
    for i, item in enumerate(items):
        queues[i % n].append(item)
    return [q for q in queues if q]


class WorkerPool:
    """Runs work items on ``num_workers`` sessions.

    With one worker the items run inline, in order, on the caller's
    persistent session. Otherwise each worker acquires its own session,
    drains its queue and releases the session. A failed item never stops
    its siblings unless ``fail_fast`` is set, in which case the shared token
    is cancelled and every item not yet started is reported as cancelled.
    """

    def __init__(
        self,
        sessions: SessionManager,
        num_workers: int = 1,
        token: Optional[CancellationToken] = None,
        fail_fast: bool = False,
        max_acquire_attempts: int = 3,
        verbose: bool = True,
    ):
        self.sessions = sessions
        self.num_workers = max(1, num_workers)
        self.token = token or CancellationToken()
        self.fail_fast = fail_fast
        self.max_acquire_attempts = max_acquire_attempts
        self.verbose = verbose

    def run(
        self, items: Sequence[WorkItem], session: Optional[Session] = None
    ) -> List[TaskOutcome]:
        """Run *items* and return one outcome per item, in input order."""
        if not items:
            return []
        if self.num_workers == 1 and session is not None:
            outcomes, _ = self._drain(0, list(items), session, fatal_on_connection_loss=True)
        else:
            outcomes = []
            queues = partition(list(items), self.num_workers)
            with ThreadPoolExecutor(max_workers=len(queues)) as pool:
                futures = [pool.submit(self._worker, w, q) for w, q in enumerate(queues)]
                for fut in as_completed(futures):
                    outcomes.extend(fut.result())
        order = {item.key: i for i, item in enumerate(items)}
        return sorted(outcomes, key=lambda o: order[o.key])

    # -- internals -----------------------------------------------------------

    def _worker(self, worker: int, queue: List[WorkItem]) -> List[TaskOutcome]:
        try:
            session = self.sessions.acquire_with_retry(self.max_acquire_attempts)
        except DatabaseConnectionError as exc:
            if self.fail_fast:
                self.token.cancel()
            return [self._failed(item, exc, worker) for item in queue]
        outcomes, session = self._drain(worker, queue, session, fatal_on_connection_loss=False)
        if session is not None:
            self.sessions.release(session)
        return outcomes

    def _drain(
        self,
        worker: int,
        queue: List[WorkItem],
        session: Session,
        fatal_on_connection_loss: bool,
    ) -> Tuple[List[TaskOutcome], Optional[Session]]:
        """Run *queue* on *session*; return the outcomes and the live session."""
        outcomes = []
        for item in queue:
            if self.token.cancelled:
                outcomes.append(TaskOutcome(item.key, ok=False, cancelled=True, worker=worker))
                continue
            ts = time.time()
            try:
                item.run(session)
            except DatabaseConnectionError as exc:
                outcomes.append(self._failed(item, exc, worker))
                if fatal_on_connection_loss or self.fail_fast:
                    self.token.cancel()
                    continue
                # replace the lost session; if that fails the rest of the queue fails
                self.sessions.release(session)
                try:
                    session = self.sessions.acquire_with_retry(self.max_acquire_attempts)
                except DatabaseConnectionError as acquire_exc:
                    rest = queue[queue.index(item) + 1:]
                    outcomes.extend(self._failed(i, acquire_exc, worker) for i in rest)
                    return outcomes, None
            except Exception as exc:  # noqa: BLE001
                outcomes.append(self._failed(item, exc, worker))
                if self.fail_fast:
                    self.token.cancel()
            else:
                outcomes.append(
                    TaskOutcome(item.key, ok=True, worker=worker, elapsed=time.time() - ts)
                )
        return outcomes, session

    def _failed(self, item: WorkItem, exc: BaseException, worker: int) -> TaskOutcome:
        failure = failure_from_exception(item.step_kind, item.step_id, exc, shape=item.shape)
        if self.verbose:
            print(f"[ACHILLES]   FAIL  {failure.describe()}")
        return TaskOutcome(item.key, ok=False, failure=failure, worker=worker)
