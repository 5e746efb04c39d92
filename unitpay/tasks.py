import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout

from unitpay.errors import UnitPayError
from unitpay.metadata import DEFAULT_MAX_RETRIES, DEFAULT_PROCESSING_TIMEOUT_MS
from unitpay.models import Task, utcnow

logger = logging.getLogger("UnitPayTasks")

TIMEOUT_ERROR = "timeout"


class TaskRunner:
    """
    Runs task jobs with the task's processing timeout enforced.

    Jobs execute in a worker thread; a job still running when its window closes is abandoned
    and the task is failed with ``error="timeout"``. An abandoned job keeps its thread, so the
    pool is replaced and later attempts never queue behind it. Failed tasks are re-queued
    while retries remain.
    """

    def __init__(self, repository=None, max_workers=4):
        self.repository = repository
        self.max_workers = max_workers
        self._lock = threading.Lock()
        self.executor = self._new_executor()

    def _new_executor(self):
        return ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="unitpay-task")

    def _abandon_pool(self, executor):
        with self._lock:
            if self.executor is executor:
                self.executor = self._new_executor()
        # queued jobs of other runs still finish on the old pool
        executor.shutdown(wait=False)

    def _save(self, task):
        if self.repository is not None:
            self.repository.update(task)

    def submit(self, task_type, data=None, max_retries=DEFAULT_MAX_RETRIES,
               processing_timeout=DEFAULT_PROCESSING_TIMEOUT_MS) -> Task:
        task = Task(type=task_type, data=data or {}, max_retries=max_retries,
                    processing_timeout=processing_timeout)
        if self.repository is not None:
            self.repository.create(task)
        return task

    def run(self, task: Task, job, retry=True) -> Task:
        while True:
            self._attempt(task, job)
            if task.status == 'completed' or not (retry and task.can_retry):
                return task
            logger.info(f"Retrying task {task.id} ({task.retry_count + 1}/{task.max_retries}) after: {task.error}")
            task.retry()
            self._save(task)

    def _attempt(self, task, job):
        task.start()
        self._save(task)
        logger.info(f"Task {task.id} ({task.type}) processing, timeout {task.processing_timeout}ms")

        with self._lock:
            executor = self.executor
        future = executor.submit(job, task.data)
        try:
            result = future.result(timeout=task.timeout_seconds)
        except FuturesTimeout:
            if not future.cancel():
                self._abandon_pool(executor)
            logger.error(f"Task {task.id} exceeded {task.processing_timeout}ms")
            task.fail(TIMEOUT_ERROR)
        except UnitPayError as e:
            logger.error(f"Task {task.id} failed: {e}")
            task.fail(str(e) or type(e).__name__)
        except Exception as e:
            logger.exception(f"Task {task.id} raised")
            task.fail(f"{type(e).__name__}: {e}")
        else:
            task.complete(result if result is not None else {})
            logger.info(f"Task {task.id} completed")
        self._save(task)

    def close(self):
        with self._lock:
            executor = self.executor
        executor.shutdown(wait=False, cancel_futures=True)


def expire_stale_tasks(repository, now=None, requeue=True):
    """Fails persisted processing tasks whose window has elapsed; re-queues those with retries left."""
    now = now or utcnow()
    expired = []
    for task in repository.by_status('processing'):
        if not task.expire(now):
            continue
        logger.warning(f"Task {task.id} timed out after {task.processing_timeout}ms")
        if requeue and task.can_retry:
            task.retry(now)
        repository.update(task)
        expired.append(task)
    return expired
