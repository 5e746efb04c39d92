PAYMENT_STATUSES = ['created', 'pending', 'processing', 'completed', 'failed', 'refunded']

# forward-only ordering; completed and failed share a rank so neither can follow the other
PAYMENT_STATUS_RANK = {
    'created': 0,
    'pending': 1,
    'processing': 2,
    'completed': 3,
    'failed': 3,
    'refunded': 4,
}

TASK_STATUSES = ['pending', 'processing', 'completed', 'failed']

TASK_TRANSITIONS = {
    'pending': {'processing'},
    'processing': {'completed', 'failed'},
    'completed': set(),
    'failed': set(),
}

# mirrors the contract's verification flag
STATUS_MAP = {
    'unverified': 0,
    'verified': 1,
}

RESULT_WIDTH = 32

# column widths of the payment_intents table after the status widening migration
STATUS_COLUMN_WIDTH = 20
BLOCKCHAIN_PAYMENT_ID_WIDTH = 66

DEFAULT_PROCESSING_TIMEOUT_MS = 300000
DEFAULT_MAX_RETRIES = 3
DEFAULT_CURRENCY = 'USD'

AMOUNT_TOLERANCE = 0.01

MERCHANT_INFO_PATH = "/payment/paypal/merchant-info/{payment_intent_id}"

PAYMENT_CONFIRMED_EVENT = 'PaymentConfirmed'
ORACLE_CALLBACK_FUNCTION = 'handleOracleFulfillment'

SUPPORTED_NETWORKS = ['sepolia', 'somnia']

# subset of the UnitpayEnhanced consumer ABI used off-chain
UNITPAY_ABI = [
    {
        "type": "event",
        "name": "PaymentConfirmed",
        "anonymous": False,
        "inputs": [
            {"name": "paymentId", "type": "string", "indexed": False},
            {"name": "isAuto", "type": "bool", "indexed": False},
        ],
    },
    {
        "type": "function",
        "name": "submitOrderId",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "paymentId", "type": "string"},
            {"name": "paypalOrderId", "type": "string"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "verificationStatus",
        "stateMutability": "view",
        "inputs": [{"name": "paymentId", "type": "string"}],
        "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "type": "function",
        "name": "handleOracleFulfillment",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "requestId", "type": "bytes32"},
            {"name": "response", "type": "bytes"},
            {"name": "err", "type": "bytes"},
        ],
        "outputs": [],
    },
]
