import os
import logging

from dotenv import load_dotenv

from unitpay.metadata import DEFAULT_PROCESSING_TIMEOUT_MS, DEFAULT_MAX_RETRIES

load_dotenv()  # Load environment variables from .env file


def _as_bool(value, default=False):
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Settings read from the environment at construction time."""

    def __init__(self, **overrides):
        self.api_base_url = os.getenv("API_BASE_URL", "http://localhost:4000/api")
        self.paypal_client_id = os.getenv("PAYPAL_CLIENT_ID")
        self.paypal_client_secret = os.getenv("PAYPAL_CLIENT_SECRET")
        self.paypal_sandbox = _as_bool(os.getenv("PAYPAL_SANDBOX"), default=True)
        self.rpc_url = os.getenv("RPC_URL")
        self.private_key = os.getenv("EVM_PRIVATE_KEY")
        self.contract_address = os.getenv("CONTRACT_ADDRESS")
        self.cache_dir = os.getenv("CACHE_DIR", "cache")
        self.api_key = os.getenv("UNITPAY_API_KEY")
        self.port = int(os.getenv("PORT", 4000))
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        self.task_processing_timeout_ms = int(os.getenv("TASK_PROCESSING_TIMEOUT_MS", DEFAULT_PROCESSING_TIMEOUT_MS))
        self.task_max_retries = int(os.getenv("TASK_MAX_RETRIES", DEFAULT_MAX_RETRIES))

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown config key: {key}")
            setattr(self, key, value)


def configure_logging(level="INFO"):
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
