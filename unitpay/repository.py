import sqlite3
import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional

from diskcache import Cache, Timeout as CacheTimeout

from unitpay.errors import PersistenceError, NotFoundError, ValidationError
from unitpay.metadata import STATUS_COLUMN_WIDTH, BLOCKCHAIN_PAYMENT_ID_WIDTH
from unitpay.models import PaymentIntent, Task, utcnow

logger = logging.getLogger("UnitPayStore")


def open_cache(directory="cache"):
    try:
        return Cache(directory)
    except (sqlite3.Error, OSError) as e:
        raise PersistenceError(f"Could not open cache at {directory}: {e}") from e


@contextmanager
def _store_errors(action):
    try:
        yield
    except (sqlite3.Error, CacheTimeout, OSError) as e:
        logger.error(f"[store] {action} failed: {e}")
        raise PersistenceError(f"{action} failed: {e}") from e


class _Repository:
    prefix = None
    model = None

    def __init__(self, cache):
        self.cache = cache

    def _key(self, record_id):
        return f"{self.prefix}:{int(record_id)}"

    def _next_id(self):
        return self.cache.incr(f"{self.prefix}:__seq__", default=0)

    def _write(self, record):
        self.cache[self._key(record.id)] = record.to_dict()

    def get(self, record_id):
        with _store_errors(f"get {self.prefix} {record_id}"):
            data = self.cache.get(self._key(record_id), None)
        if data is None:
            return None
        return self.model.from_dict(data)

    def require(self, record_id):
        record = self.get(record_id)
        if record is None:
            raise NotFoundError(f"{self.prefix} {record_id} not found")
        return record

    def _ids(self) -> Iterator[int]:
        head = f"{self.prefix}:"
        for key in self.cache.iterkeys():
            if isinstance(key, str) and key.startswith(head):
                suffix = key[len(head):]
                if suffix.isdigit():
                    yield int(suffix)

    def list(self) -> List:
        with _store_errors(f"list {self.prefix}"):
            ids = sorted(self._ids())
            records = [self.cache.get(self._key(i)) for i in ids]
        return [self.model.from_dict(r) for r in records if r is not None]

    def delete(self, record_id) -> bool:
        with _store_errors(f"delete {self.prefix} {record_id}"):
            return self.cache.delete(self._key(record_id))


class PaymentIntentRepository(_Repository):
    """Typed CRUD for payment intents kept in a diskcache Cache."""

    prefix = "payment_intent"
    model = PaymentIntent

    def _index_key(self, blockchain_payment_id):
        return f"{self.prefix}:bpid:{blockchain_payment_id.lower()}"

    def _check_widths(self, intent):
        if len(intent.status) > STATUS_COLUMN_WIDTH:
            raise ValidationError(f"status {intent.status!r} exceeds {STATUS_COLUMN_WIDTH} chars")
        if intent.blockchain_payment_id and len(intent.blockchain_payment_id) > BLOCKCHAIN_PAYMENT_ID_WIDTH:
            raise ValidationError(f"blockchain_payment_id exceeds {BLOCKCHAIN_PAYMENT_ID_WIDTH} chars")

    def create(self, intent: PaymentIntent) -> PaymentIntent:
        self._check_widths(intent)
        with _store_errors("create payment intent"):
            with self.cache.transact():
                if intent.blockchain_payment_id:
                    self._claim_index(intent)
                intent.id = self._next_id()
                if intent.blockchain_payment_id:
                    self.cache[self._index_key(intent.blockchain_payment_id)] = intent.id
                self._write(intent)
        logger.info(f"[store] Created payment intent {intent.id}")
        return intent

    def _claim_index(self, intent):
        owner = self.cache.get(self._index_key(intent.blockchain_payment_id), None)
        if owner is not None and owner != intent.id:
            raise ValidationError(
                f"blockchain_payment_id {intent.blockchain_payment_id} already belongs to payment intent {owner}"
            )

    def update(self, intent: PaymentIntent) -> PaymentIntent:
        """
        Persists ``intent``. A stored blockchain_payment_id is never replaced or cleared.
        """
        if intent.id is None:
            raise ValidationError("Cannot update a payment intent without an id")
        self._check_widths(intent)
        with _store_errors(f"update payment intent {intent.id}"):
            with self.cache.transact():
                stored = self.cache.get(self._key(intent.id), None)
                if stored is None:
                    raise NotFoundError(f"payment_intent {intent.id} not found")
                previous = stored.get("blockchain_payment_id")
                if previous and (intent.blockchain_payment_id or "").lower() != previous.lower():
                    raise ValidationError(
                        f"blockchain_payment_id of payment intent {intent.id} is immutable once set"
                    )
                if intent.blockchain_payment_id and not previous:
                    self._claim_index(intent)
                    self.cache[self._index_key(intent.blockchain_payment_id)] = intent.id
                intent.updated_at = utcnow()
                self._write(intent)
        return intent

    def find_by_blockchain_payment_id(self, blockchain_payment_id: str) -> Optional[PaymentIntent]:
        with _store_errors("lookup by blockchain_payment_id"):
            record_id = self.cache.get(self._index_key(blockchain_payment_id), None)
        if record_id is None:
            return None
        return self.get(record_id)

    def delete(self, record_id) -> bool:
        intent = self.get(record_id)
        if intent is None:
            return False
        with _store_errors(f"delete payment intent {record_id}"):
            with self.cache.transact():
                if intent.blockchain_payment_id:
                    self.cache.delete(self._index_key(intent.blockchain_payment_id))
                return self.cache.delete(self._key(record_id))


class TaskRepository(_Repository):
    prefix = "task"
    model = Task

    def create(self, task: Task) -> Task:
        with _store_errors("create task"):
            with self.cache.transact():
                task.id = self._next_id()
                self._write(task)
        logger.info(f"[store] Queued task {task.id} ({task.type})")
        return task

    def update(self, task: Task) -> Task:
        if task.id is None:
            raise ValidationError("Cannot update a task without an id")
        with _store_errors(f"update task {task.id}"):
            if self._key(task.id) not in self.cache:
                raise NotFoundError(f"task {task.id} not found")
            self._write(task)
        return task

    def by_status(self, status: str) -> List[Task]:
        return [t for t in self.list() if t.status == status]
