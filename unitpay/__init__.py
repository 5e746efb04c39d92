from .errors import (UnitPayError, NetworkError, ValidationError, InvalidTransition, PersistenceError,
                     NotFoundError, TaskTimeoutError)
from .metadata import (PAYMENT_STATUSES, TASK_STATUSES, STATUS_MAP, RESULT_WIDTH, SUPPORTED_NETWORKS,
                       DEFAULT_PROCESSING_TIMEOUT_MS, DEFAULT_MAX_RETRIES)
from .models import PaymentIntent, Task, VerificationRequest
from .config import Config, configure_logging
from .repository import PaymentIntentRepository, TaskRepository, open_cache
from .merchant import fetch_merchant_info, LoggingNotifier
from .verification import encode_result, encode_uint256, decode_result, handle_verification_request
from .paypal import PayPalModule, PayPalOrderVerifier
from .web3_utils import (network_func, send_contract_tx, submit_order_id, verification_status, payment_id_hash,
                         ContractOracleCallback, SettlementBridge, PaymentConfirmedListener, PaymentEventSync)
from .tasks import TaskRunner, expire_stale_tasks
from .log_relay import LogRelay, RelayHandler, JsonLogFormatter
