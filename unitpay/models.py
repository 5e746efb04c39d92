import re
import json
import hashlib
import datetime as dt
from dataclasses import dataclass, field, asdict
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from unitpay.errors import ValidationError, InvalidTransition
from unitpay.metadata import (PAYMENT_STATUSES, PAYMENT_STATUS_RANK, TASK_STATUSES, TASK_TRANSITIONS,
                              DEFAULT_MAX_RETRIES, DEFAULT_PROCESSING_TIMEOUT_MS, DEFAULT_CURRENCY)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
BLOCKCHAIN_PAYMENT_ID_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def utcnow():
    return dt.datetime.now(dt.timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


def _parse_dt(value):
    if value is None or isinstance(value, dt.datetime):
        return value
    return dt.datetime.fromisoformat(value)


def parse_amount(value) -> Decimal:
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"Amount must be positive: {value!r}")
    return amount


def validate_email(value, name="email"):
    if not isinstance(value, str) or not EMAIL_RE.match(value.strip()):
        raise ValidationError(f"Invalid {name}: {value!r}")
    return value.strip()


@dataclass
class PaymentIntent:
    amount: Decimal
    merchant_email: Optional[str] = None
    counterparty_email: Optional[str] = None
    currency: str = DEFAULT_CURRENCY
    description: Optional[str] = None
    id: Optional[int] = None
    status: str = 'created'
    blockchain_payment_id: Optional[str] = None
    status_history: List[Dict[str, Any]] = field(default_factory=list)
    created_at: dt.datetime = field(default_factory=utcnow)
    updated_at: dt.datetime = field(default_factory=utcnow)

    def __post_init__(self):
        self.amount = parse_amount(self.amount)
        if self.status not in PAYMENT_STATUSES:
            raise ValidationError(f"Unknown payment status: {self.status!r}")
        if self.merchant_email is not None:
            self.merchant_email = validate_email(self.merchant_email, "merchant email")
        if self.counterparty_email is not None:
            self.counterparty_email = validate_email(self.counterparty_email, "counterparty email")
        if self.blockchain_payment_id is not None:
            _check_blockchain_payment_id(self.blockchain_payment_id)

    def transition_to(self, status: str, note: Optional[str] = None, now=None, **metadata) -> bool:
        """
        Moves the intent forward to ``status`` and records a chained history entry.

        Returns False when ``status`` is already current. Raises InvalidTransition for any
        move that is not strictly forward.
        """
        if status not in PAYMENT_STATUSES:
            raise ValidationError(f"Unknown payment status: {status!r}")
        if status == self.status:
            return False
        if PAYMENT_STATUS_RANK[status] <= PAYMENT_STATUS_RANK[self.status]:
            raise InvalidTransition("payment intent", self.status, status)

        now = now or utcnow()
        self.status = status
        self.updated_at = now
        self._append_history(status, note or f"Status updated to {status}", now, metadata)
        return True

    def assign_blockchain_payment_id(self, value: str, now=None) -> bool:
        _check_blockchain_payment_id(value)
        if self.blockchain_payment_id is not None:
            if self.blockchain_payment_id.lower() == value.lower():
                return False
            raise ValidationError(
                f"blockchain_payment_id already set for payment intent {self.id}; refusing to overwrite"
            )
        self.blockchain_payment_id = value
        self.updated_at = now or utcnow()
        return True

    def _append_history(self, status, note, now, metadata):
        previous = self.status_history[-1] if self.status_history else None
        entry = {
            "status": status,
            "timestamp": now.isoformat(),
            "note": note,
            **metadata,
            "previous_hash": previous["hash"] if previous else None,
        }
        entry["hash"] = _entry_hash(entry)
        self.status_history.append(entry)

    def verify_history(self) -> bool:
        previous_hash = None
        for entry in self.status_history:
            if entry.get("previous_hash") != previous_hash:
                return False
            body = {k: v for k, v in entry.items() if k != "hash"}
            if _entry_hash(body) != entry.get("hash"):
                return False
            previous_hash = entry["hash"]
        return True

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["amount"] = str(self.amount)
        data["created_at"] = _iso(self.created_at)
        data["updated_at"] = _iso(self.updated_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentIntent":
        data = dict(data)
        data["created_at"] = _parse_dt(data.get("created_at")) or utcnow()
        data["updated_at"] = _parse_dt(data.get("updated_at")) or utcnow()
        data["status_history"] = list(data.get("status_history") or [])
        return cls(**data)


def _entry_hash(entry):
    return hashlib.sha256(json.dumps(entry, sort_keys=True, default=str).encode("utf-8")).hexdigest()


def _check_blockchain_payment_id(value):
    if not isinstance(value, str) or not BLOCKCHAIN_PAYMENT_ID_RE.match(value):
        raise ValidationError(f"blockchain_payment_id must be 0x followed by 64 hex chars, got {value!r}")


@dataclass
class Task:
    type: str
    data: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
    status: str = 'pending'
    result: Any = None
    error: Optional[str] = None
    start_time: Optional[dt.datetime] = None
    end_time: Optional[dt.datetime] = None
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    processing_timeout: int = DEFAULT_PROCESSING_TIMEOUT_MS
    created_at: dt.datetime = field(default_factory=utcnow)
    updated_at: dt.datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not self.type:
            raise ValidationError("Task type is required")
        if self.status not in TASK_STATUSES:
            raise ValidationError(f"Unknown task status: {self.status!r}")
        if self.max_retries < 0 or not 0 <= self.retry_count <= self.max_retries:
            raise ValidationError(f"retry_count {self.retry_count} outside 0..{self.max_retries}")
        if self.processing_timeout <= 0:
            raise ValidationError("processing_timeout must be positive")
        if self.status == 'completed' and (self.result is None or self.error is not None):
            raise ValidationError("completed task needs a result and no error")
        if self.status == 'failed' and not self.error:
            raise ValidationError("failed task needs an error")

    def _move(self, new, now):
        if new not in TASK_TRANSITIONS[self.status]:
            raise InvalidTransition("task", self.status, new)
        self.status = new
        self.updated_at = now

    def start(self, now=None):
        now = now or utcnow()
        self._move('processing', now)
        self.start_time = now
        self.end_time = None

    def complete(self, result, now=None):
        if result is None:
            raise ValidationError("A completed task must carry a result")
        now = now or utcnow()
        self._move('completed', now)
        self.result = result
        self.error = None
        self.end_time = now

    def fail(self, error, now=None):
        if not error:
            raise ValidationError("A failed task must carry an error")
        now = now or utcnow()
        self._move('failed', now)
        self.error = str(error)
        self.end_time = now

    @property
    def can_retry(self) -> bool:
        return self.status == 'failed' and self.retry_count < self.max_retries

    def retry(self, now=None):
        """Re-queues a failed task as a new pending attempt."""
        if self.status != 'failed':
            raise InvalidTransition("task", self.status, 'pending')
        if self.retry_count >= self.max_retries:
            raise ValidationError(f"Task {self.id} exhausted its {self.max_retries} retries")
        self.retry_count += 1
        self.status = 'pending'
        self.result = None
        self.error = None
        self.start_time = None
        self.end_time = None
        self.updated_at = now or utcnow()

    @property
    def timeout_seconds(self) -> float:
        return self.processing_timeout / 1000.0

    def is_timed_out(self, now=None) -> bool:
        if self.status != 'processing' or self.start_time is None:
            return False
        now = now or utcnow()
        return (now - self.start_time).total_seconds() * 1000 > self.processing_timeout

    def expire(self, now=None) -> bool:
        now = now or utcnow()
        if not self.is_timed_out(now):
            return False
        self.fail("timeout", now)
        return True

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("start_time", "end_time", "created_at", "updated_at"):
            data[key] = _iso(getattr(self, key))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        data = dict(data)
        for key in ("start_time", "end_time", "created_at", "updated_at"):
            data[key] = _parse_dt(data.get(key))
        data["created_at"] = data["created_at"] or utcnow()
        data["updated_at"] = data["updated_at"] or utcnow()
        return cls(**data)


_MISSING = object()


def _index_arg(args, index):
    if str(index) in args:
        return args[str(index)]
    return args.get(index, _MISSING)


@dataclass(frozen=True)
class VerificationRequest:
    order_id: str
    merchant_email: str
    amount: Decimal
    counterparty_email: str

    ARG_NAMES = ("orderId", "merchantEmail", "amount", "lpEmail")

    @classmethod
    def from_args(cls, args) -> "VerificationRequest":
        """
        Builds a request from oracle arguments.

        Accepts the positional form ``[orderId, merchantEmail, amount, lpEmail]`` or a mapping
        keyed by those names (``counterpartyEmail`` is accepted for ``lpEmail``) or by their
        positions ``"0"``..``"3"``.
        """
        if isinstance(args, dict):
            if "lpEmail" not in args and "counterpartyEmail" in args:
                args = {**args, "lpEmail": args["counterpartyEmail"]}
            missing = [name for name in cls.ARG_NAMES if name not in args]
            indexed = [_index_arg(args, i) for i in range(len(cls.ARG_NAMES))]
            if missing and all(v is not _MISSING for v in indexed):
                values = indexed
            elif missing:
                raise ValidationError(f"Missing verification arguments: {', '.join(missing)}")
            else:
                values = [args[name] for name in cls.ARG_NAMES]
        elif isinstance(args, (list, tuple)):
            if len(args) != len(cls.ARG_NAMES):
                raise ValidationError(f"Expected {len(cls.ARG_NAMES)} arguments, got {len(args)}")
            values = list(args)
        else:
            raise ValidationError(f"Arguments must be a list or a mapping, got {type(args).__name__}")

        for name, value in zip(cls.ARG_NAMES, values):
            if value is None or (isinstance(value, str) and not value.strip()):
                raise ValidationError(f"Missing required argument: {name}")

        order_id, merchant_email, amount, counterparty_email = values
        if not isinstance(order_id, str):
            raise ValidationError(f"orderId must be a string, got {type(order_id).__name__}")

        return cls(
            order_id=order_id.strip(),
            merchant_email=validate_email(merchant_email, "merchantEmail"),
            amount=parse_amount(amount),
            counterparty_email=validate_email(counterparty_email, "lpEmail"),
        )
