import time
import logging

import requests
from web3 import Web3
from web3.exceptions import Web3Exception
from web3.types import TxParams

from unitpay.errors import NetworkError, TaskTimeoutError, InvalidTransition
from unitpay.merchant import LoggingNotifier
from unitpay.metadata import SUPPORTED_NETWORKS, ORACLE_CALLBACK_FUNCTION, PAYMENT_CONFIRMED_EVENT
from unitpay.verification import decode_result, handle_verification_request

logger = logging.getLogger("UnitPayChain")

NETWORK_GATEWAYS = {
    'sepolia': 'https://ethereum-sepolia-rpc.publicnode.com',
    'somnia': 'https://dream-rpc.somnia.network',
}

RPC_ERRORS = (ValueError, Web3Exception, requests.RequestException)


def network_func(private_key=None, network='sepolia', rpc_url=None):
    if rpc_url is None:
        if network not in SUPPORTED_NETWORKS:
            raise ValueError(f"Network {network} not supported. Supported networks are: {SUPPORTED_NETWORKS}")
        rpc_url = NETWORK_GATEWAYS[network]

    w3 = Web3(Web3.HTTPProvider(rpc_url))
    if not w3.is_connected():
        raise NetworkError(f"Failed to connect to {rpc_url}")

    account = w3.eth.account.from_key(private_key) if private_key else None
    logger.info(f"Connected to {rpc_url} as {account.address if account else 'read-only'}")
    return w3, account


def send_contract_tx(w3, account, contract_fn):
    """Builds, signs and sends an EIP-1559 transaction for a bound contract function."""
    base_tx = contract_fn.build_transaction({
        "from": account.address,
        "nonce": w3.eth.get_transaction_count(account.address, 'pending'),
    })

    gas_estimate = w3.eth.estimate_gas(base_tx)

    latest_block = w3.eth.get_block("latest")
    base_fee = latest_block.get("baseFeePerGas", w3.to_wei(15, "gwei"))
    priority_fee = w3.to_wei(2, "gwei")

    tx: TxParams = {
        "from": account.address,
        "to": base_tx["to"],
        "nonce": base_tx["nonce"],
        "data": base_tx["data"],
        "gas": int(gas_estimate * 1.2),  # 20% buffer
        "maxPriorityFeePerGas": priority_fee,
        "maxFeePerGas": base_fee + priority_fee,
        "chainId": w3.eth.chain_id,
        "type": 2
    }

    signed_tx = account.sign_transaction(tx)
    tx_hash = w3.eth.send_raw_transaction(signed_tx.raw_transaction)
    receipt = w3.eth.wait_for_transaction_receipt(tx_hash)
    if receipt.status != 1:
        raise NetworkError(f"Transaction {'0x' + receipt.transactionHash.hex()} reverted")
    logger.info(f"Sent tx: {'0x' + receipt.transactionHash.hex()}")
    return receipt


def submit_order_id(w3, account, contract, payment_id, paypal_order_id):
    """Asks the contract to start oracle verification of a PayPal order."""
    logger.info(f"Submitting PayPal order {paypal_order_id} for payment {payment_id}")
    return send_contract_tx(w3, account, contract.functions.submitOrderId(payment_id, paypal_order_id))


def verification_status(contract, payment_id) -> int:
    return int(contract.functions.verificationStatus(payment_id).call())


def payment_id_hash(payment_id: str) -> bytes:
    return bytes(Web3.keccak(text=payment_id))


class ContractOracleCallback:
    """Delivers an oracle response to a consumer contract's fulfillment function."""

    def __init__(self, w3, account, contract, function_name=ORACLE_CALLBACK_FUNCTION):
        self.w3 = w3
        self.account = account
        self.contract = contract
        self.function_name = function_name

    def __call__(self, request_id, response, err=b""):
        fn = getattr(self.contract.functions, self.function_name)
        return send_contract_tx(self.w3, self.account, fn(request_id, response, err))


class SettlementBridge:
    def __init__(self, callback):
        self.callback = callback

    def submit(self, request_id, result: bytes):
        verified = decode_result(result)
        logger.info(f"Submitting verification result for request {_hex(request_id)}: verified={verified}")
        return self.callback(request_id, bytes(result), b"")

    def settle(self, request_id, args, verifier=None):
        """Runs the verification handler over oracle args and submits its result."""
        result = handle_verification_request(args, verifier=verifier)
        return self.submit(request_id, result)


def _hex(value):
    return "0x" + bytes(value).hex() if isinstance(value, (bytes, bytearray)) else str(value)


def event_matches_payment(value, payment_id) -> bool:
    """Indexed string params arrive as their keccak hash; plain ones as the string itself."""
    if isinstance(value, str):
        return value == payment_id
    if isinstance(value, (bytes, bytearray)):
        return bytes(value) == payment_id_hash(payment_id)
    return False


class PaymentConfirmedListener:
    """
    Waits for the first PaymentConfirmed event of a payment, notifies the UI, then detaches.
    """

    def __init__(self, w3, contract, notifier=None, refresh_task_pool=None, poll_interval=3):
        self.w3 = w3
        self.contract = contract
        self.notifier = notifier or LoggingNotifier()
        self.refresh_task_pool = refresh_task_pool
        self.poll_interval = poll_interval

    def listen_once(self, payment_id, timeout=None, from_block=None):
        if from_block is None:
            from_block = self.w3.eth.block_number
        deadline = None if timeout is None else time.time() + timeout
        logger.info(f"Waiting for PaymentConfirmed of payment {payment_id} from block {from_block}")

        while deadline is None or time.time() < deadline:
            try:
                current_block = self.w3.eth.block_number
                if current_block >= from_block:
                    event = getattr(self.contract.events, PAYMENT_CONFIRMED_EVENT)
                    logs = event().get_logs(
                        from_block=from_block,
                        to_block=current_block
                    )
                    for log in logs:
                        if event_matches_payment(log["args"]["paymentId"], payment_id):
                            self._fire(payment_id, log)
                            return log
                    from_block = current_block + 1
            except RPC_ERRORS as e:
                logger.warning(f"Skipping block fetch error: {e}")
            time.sleep(self.poll_interval)

        raise TaskTimeoutError(f"PaymentConfirmed for {payment_id} not seen within {timeout} seconds")

    def _fire(self, payment_id, log):
        is_auto = log["args"].get("isAuto", False)
        logger.info(f"Payment {payment_id} confirmed on-chain (auto={is_auto})")
        self.notifier.show_success(f"Order {payment_id} verification completed")
        if self.refresh_task_pool is not None:
            self.refresh_task_pool()


class PaymentEventSync:
    """Moves stored payment intents to completed when their PaymentConfirmed event arrives."""

    def __init__(self, repository):
        self.repository = repository
        self.hash_map = {}

    def load(self):
        self.hash_map.clear()
        for intent in self.repository.list():
            if intent.blockchain_payment_id:
                self.register(intent.id, intent.blockchain_payment_id)
        logger.info(f"Loaded {len(self.hash_map)} paymentId hashes")
        return len(self.hash_map)

    def register(self, payment_intent_id, blockchain_payment_id):
        self.hash_map[payment_id_hash(blockchain_payment_id)] = payment_intent_id

    def _find(self, value):
        if isinstance(value, str):
            return self.repository.find_by_blockchain_payment_id(value)
        intent_id = self.hash_map.get(bytes(value))
        return self.repository.get(intent_id) if intent_id is not None else None

    def apply(self, log):
        value = log["args"]["paymentId"]
        intent = self._find(value)
        if intent is None:
            logger.warning(f"No payment intent for PaymentConfirmed paymentId={_hex(value)}")
            return None

        tx_hash = log.get("transactionHash")
        try:
            changed = intent.transition_to(
                'completed',
                note='Chainlink verification passed',
                tx_hash=_hex(tx_hash) if tx_hash is not None else None,
                block_number=log.get("blockNumber"),
            )
        except InvalidTransition as e:
            logger.warning(f"Ignoring PaymentConfirmed for payment intent {intent.id}: {e}")
            return intent

        if changed:
            self.repository.update(intent)
            logger.info(f"PaymentIntent {intent.id} updated to completed")
        return intent
