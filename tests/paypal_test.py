import copy

import pytest
import requests

from conftest import make_response
from unitpay import (PayPalModule, PayPalOrderVerifier, VerificationRequest, NetworkError, encode_result,
                     handle_verification_request)
from unitpay.paypal import summarize_order

ORDER = {
    "id": "ORD1",
    "status": "COMPLETED",
    "payer": {"email_address": "lp@x.com"},
    "purchase_units": [{
        "payee": {"email_address": "m@x.com"},
        "amount": {"currency_code": "USD", "value": "100.00"},
    }],
}

REQUEST = VerificationRequest.from_args(["ORD1", "m@x.com", "100", "lp@x.com"])


@pytest.fixture
def paypal(mocker):
    module = mocker.Mock(spec=PayPalModule)
    module.get_order.return_value = copy.deepcopy(ORDER)
    return module


def test_summarize_order():
    assert summarize_order(ORDER) == {
        "payer_email": "lp@x.com",
        "merchant_email": "m@x.com",
        "amount": "100.00",
        "currency": "USD",
        "status": "COMPLETED",
    }
    assert summarize_order({})["merchant_email"] is None


def test_verifier_accepts_matching_order(paypal):
    assert PayPalOrderVerifier(paypal)(REQUEST) is True
    paypal.get_order.assert_called_once_with("ORD1")


def test_verifier_emails_are_case_insensitive(paypal):
    order = paypal.get_order.return_value
    order["payer"]["email_address"] = "LP@X.com"
    order["purchase_units"][0]["payee"]["email_address"] = "M@X.COM"
    assert PayPalOrderVerifier(paypal)(REQUEST) is True


def test_verifier_amount_tolerance(paypal):
    paypal.get_order.return_value["purchase_units"][0]["amount"]["value"] = "100.01"
    assert PayPalOrderVerifier(paypal)(REQUEST) is True
    paypal.get_order.return_value["purchase_units"][0]["amount"]["value"] = "100.02"
    assert PayPalOrderVerifier(paypal)(REQUEST) is False


@pytest.mark.parametrize("mutate", [
    lambda o: o.update(status="APPROVED"),
    lambda o: o["payer"].update(email_address="someone@else.com"),
    lambda o: o["purchase_units"][0]["payee"].update(email_address="other@shop.com"),
    lambda o: o["purchase_units"][0]["amount"].update(value="not-a-number"),
    lambda o: o.pop("payer"),
    lambda o: o.pop("status"),
])
def test_verifier_rejects_mismatches(paypal, mutate):
    mutate(paypal.get_order.return_value)
    assert PayPalOrderVerifier(paypal)(REQUEST) is False


def test_verifier_rejects_when_paypal_unreachable(paypal):
    paypal.get_order.side_effect = NetworkError("timeout")
    assert PayPalOrderVerifier(paypal)(REQUEST) is False


def test_paypal_module_requires_credentials(monkeypatch):
    monkeypatch.delenv("PAYPAL_CLIENT_ID", raising=False)
    monkeypatch.delenv("PAYPAL_CLIENT_SECRET", raising=False)
    with pytest.raises(RuntimeError):
        PayPalModule()


def test_paypal_module_fetches_order_with_token(mocker):
    session = mocker.Mock()
    session.post.return_value = make_response(200, {"access_token": "tok-123"})
    session.get.return_value = make_response(200, ORDER)

    paypal = PayPalModule(sandbox=True, client_id="id", client_secret="secret", session=session)
    assert paypal.get_order("ORD1") == ORDER

    token_url = session.post.call_args.args[0]
    assert token_url == "https://api-m.sandbox.paypal.com/v1/oauth2/token"
    order_url = session.get.call_args.args[0]
    assert order_url == "https://api-m.sandbox.paypal.com/v2/checkout/orders/ORD1"
    assert session.get.call_args.kwargs["headers"]["Authorization"] == "Bearer tok-123"

    paypal.get_order("ORD1")
    assert session.post.call_count == 1


def test_paypal_module_wraps_http_errors(mocker):
    session = mocker.Mock()
    session.post.return_value = make_response(200, {"access_token": "tok-123"})
    session.get.return_value = make_response(404, {"name": "RESOURCE_NOT_FOUND"})

    paypal = PayPalModule(sandbox=False, client_id="id", client_secret="secret", session=session)
    assert paypal.api_base == "https://api-m.paypal.com"
    with pytest.raises(NetworkError):
        paypal.get_order("missing")


def test_paypal_module_wraps_token_transport_errors(mocker):
    session = mocker.Mock()
    session.post.side_effect = requests.ConnectionError("refused")

    paypal = PayPalModule(client_id="id", client_secret="secret", session=session)
    with pytest.raises(NetworkError):
        paypal.get_order("ORD1")


ARGS = ["ORD1", "m@x.com", "100", "lp@x.com"]


def live_verifier(session):
    return PayPalOrderVerifier(PayPalModule(client_id="id", client_secret="secret", session=session))


def test_token_reply_without_access_token_is_unverified(mocker):
    session = mocker.Mock()
    session.post.return_value = make_response(200, {"error": "invalid_client"})

    assert handle_verification_request(ARGS, verifier=live_verifier(session)) == bytes(32)
    session.get.assert_not_called()


def test_token_reply_not_json_is_network_error(mocker):
    session = mocker.Mock()
    session.post.return_value = make_response(200, text="<html>maintenance</html>")

    paypal = PayPalModule(client_id="id", client_secret="secret", session=session)
    with pytest.raises(NetworkError):
        paypal.get_order("ORD1")


@pytest.mark.parametrize("reply", [
    make_response(200, text="<html>maintenance</html>"),
    make_response(200, ["not", "an", "order"]),
    make_response(200, "COMPLETED"),
])
def test_order_reply_not_an_object_is_unverified(mocker, reply):
    session = mocker.Mock()
    session.post.return_value = make_response(200, {"access_token": "tok"})
    session.get.return_value = reply

    assert handle_verification_request(ARGS, verifier=live_verifier(session)) == bytes(32)


@pytest.mark.parametrize("mutate", [
    lambda o: o.update(purchase_units="broken"),
    lambda o: o.update(payer="lp@x.com"),
    lambda o: o["payer"].update(email_address=["lp@x.com"]),
    lambda o: o["purchase_units"][0]["amount"].update(value="NaN"),
])
def test_verifier_rejects_malformed_order_shapes(paypal, mutate):
    mutate(paypal.get_order.return_value)
    assert handle_verification_request(ARGS, verifier=PayPalOrderVerifier(paypal)) == bytes(32)


def test_verifier_rejects_non_dict_order(paypal):
    paypal.get_order.return_value = ["ORD1"]
    assert PayPalOrderVerifier(paypal)(REQUEST) is False


def test_rejected_token_is_refreshed_once(mocker):
    session = mocker.Mock()
    session.post.side_effect = [
        make_response(200, {"access_token": "old", "expires_in": 32400}),
        make_response(200, {"access_token": "new", "expires_in": 32400}),
    ]

    def get(url, headers=None, timeout=None):
        if headers["Authorization"] == "Bearer new":
            return make_response(200, ORDER)
        return make_response(401, {"error": "invalid_token"})

    session.get.side_effect = get

    assert handle_verification_request(ARGS, verifier=live_verifier(session)) == encode_result(True)
    assert session.post.call_count == 2
    assert session.get.call_count == 2


def test_persistent_401_is_network_error(mocker):
    session = mocker.Mock()
    session.post.return_value = make_response(200, {"access_token": "tok"})
    session.get.return_value = make_response(401, {"error": "invalid_token"})

    paypal = PayPalModule(client_id="id", client_secret="secret", session=session)
    with pytest.raises(NetworkError):
        paypal.get_order("ORD1")
    assert session.get.call_count == 2


def test_expired_token_is_renewed(mocker):
    session = mocker.Mock()
    session.post.return_value = make_response(200, {"access_token": "tok", "expires_in": 0})
    session.get.return_value = make_response(200, ORDER)

    paypal = PayPalModule(client_id="id", client_secret="secret", session=session)
    paypal.get_order("ORD1")
    paypal.get_order("ORD1")
    assert session.post.call_count == 2
