import pytest
from hexbytes import HexBytes
from web3.datastructures import AttributeDict

from unitpay import (PaymentIntent, PaymentConfirmedListener, PaymentEventSync, SettlementBridge,
                     ContractOracleCallback, TaskTimeoutError, ValidationError, encode_result, payment_id_hash)
from unitpay.web3_utils import event_matches_payment

BPID = "0x" + "ab" * 32
REQUEST_ID = b"\x07" * 32


def confirmed_log(payment_id, is_auto=True, block=12, tx=b"\x01" * 32):
    return AttributeDict({
        "event": "PaymentConfirmed",
        "args": AttributeDict({"paymentId": payment_id, "isAuto": is_auto}),
        "transactionHash": HexBytes(tx),
        "blockNumber": block,
    })


@pytest.fixture
def chain(mocker):
    w3 = mocker.Mock()
    w3.eth.block_number = 12
    contract = mocker.Mock()
    get_logs = contract.events.PaymentConfirmed.return_value.get_logs
    return w3, contract, get_logs


def test_event_matches_payment():
    assert event_matches_payment("pay-1", "pay-1")
    assert not event_matches_payment("pay-2", "pay-1")
    assert event_matches_payment(payment_id_hash("pay-1"), "pay-1")
    assert not event_matches_payment(payment_id_hash("pay-2"), "pay-1")
    assert not event_matches_payment(None, "pay-1")


def test_listener_fires_once_for_first_match(chain, notifier, mocker):
    w3, contract, get_logs = chain
    refresh = mocker.Mock()
    get_logs.return_value = [confirmed_log("other"), confirmed_log("pay-1"), confirmed_log("pay-1", is_auto=False)]

    listener = PaymentConfirmedListener(w3, contract, notifier=notifier, refresh_task_pool=refresh, poll_interval=0)
    log = listener.listen_once("pay-1", timeout=1, from_block=10)

    assert log["args"]["isAuto"] is True
    assert notifier.of("success") == ["Order pay-1 verification completed"]
    refresh.assert_called_once_with()
    get_logs.assert_called_once_with(from_block=10, to_block=12)


def test_listener_matches_hashed_payment_id(chain, notifier):
    w3, contract, get_logs = chain
    get_logs.return_value = [confirmed_log(payment_id_hash("pay-1"))]

    listener = PaymentConfirmedListener(w3, contract, notifier=notifier, poll_interval=0)
    assert listener.listen_once("pay-1", timeout=1) is not None
    assert len(notifier.of("success")) == 1


def test_listener_survives_rpc_errors(chain, notifier):
    w3, contract, get_logs = chain
    get_logs.side_effect = [ValueError("header not found"), [confirmed_log("pay-1")]]

    listener = PaymentConfirmedListener(w3, contract, notifier=notifier, poll_interval=0)
    listener.listen_once("pay-1", timeout=1, from_block=12)

    assert get_logs.call_count == 2
    assert len(notifier.of("success")) == 1


def test_listener_times_out_without_event(chain, notifier, mocker):
    w3, contract, get_logs = chain
    get_logs.return_value = []
    refresh = mocker.Mock()

    listener = PaymentConfirmedListener(w3, contract, notifier=notifier, refresh_task_pool=refresh,
                                        poll_interval=0.01)
    with pytest.raises(TaskTimeoutError):
        listener.listen_once("pay-1", timeout=0.05)

    assert notifier.of("success") == []
    refresh.assert_not_called()


def test_bridge_submits_result_to_callback(mocker):
    callback = mocker.Mock(return_value="receipt")
    bridge = SettlementBridge(callback)

    assert bridge.submit(REQUEST_ID, encode_result(True)) == "receipt"
    callback.assert_called_once_with(REQUEST_ID, encode_result(True), b"")


def test_bridge_rejects_malformed_result(mocker):
    callback = mocker.Mock()
    bridge = SettlementBridge(callback)

    with pytest.raises(ValidationError):
        bridge.submit(REQUEST_ID, b"\x01")
    callback.assert_not_called()


def test_bridge_settles_oracle_args(mocker):
    callback = mocker.Mock()
    bridge = SettlementBridge(callback)

    bridge.settle(REQUEST_ID, ["ORD1", "m@x.com", "100", "lp@x.com"], verifier=lambda request: False)
    callback.assert_called_once_with(REQUEST_ID, encode_result(False), b"")


def test_contract_callback_sends_fulfillment(mocker):
    send = mocker.patch("unitpay.web3_utils.send_contract_tx", return_value="receipt")
    w3, account, contract = mocker.Mock(), mocker.Mock(), mocker.Mock()

    callback = ContractOracleCallback(w3, account, contract)
    assert callback(REQUEST_ID, encode_result(True)) == "receipt"

    contract.functions.handleOracleFulfillment.assert_called_once_with(REQUEST_ID, encode_result(True), b"")
    send.assert_called_once_with(w3, account, contract.functions.handleOracleFulfillment.return_value)


def test_event_sync_completes_intent(intents):
    intent = intents.create(PaymentIntent(amount="100", status="processing", blockchain_payment_id=BPID))

    updated = PaymentEventSync(intents).apply(confirmed_log(BPID, block=99))

    assert updated.status == "completed"
    stored = intents.get(intent.id)
    assert stored.status == "completed"
    entry = stored.status_history[-1]
    assert entry["block_number"] == 99
    assert entry["tx_hash"] == "0x" + "01" * 32
    assert stored.verify_history()


def test_event_sync_resolves_hashed_ids(intents):
    intent = intents.create(PaymentIntent(amount="100", blockchain_payment_id=BPID))
    sync = PaymentEventSync(intents)
    assert sync.load() == 1

    sync.apply(confirmed_log(payment_id_hash(BPID)))
    assert intents.get(intent.id).status == "completed"


def test_event_sync_ignores_backward_move(intents):
    intent = intents.create(PaymentIntent(amount="100", status="refunded", blockchain_payment_id=BPID))

    PaymentEventSync(intents).apply(confirmed_log(BPID))
    assert intents.get(intent.id).status == "refunded"


def test_event_sync_unknown_payment(intents):
    assert PaymentEventSync(intents).apply(confirmed_log("0x" + "ff" * 32)) is None
    assert PaymentEventSync(intents).apply(confirmed_log(b"\x00" * 32)) is None
