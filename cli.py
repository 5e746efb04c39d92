import os
import sys
import json
import click
import requests
from dotenv import load_dotenv

from unitpay import (Config, configure_logging, fetch_merchant_info, handle_verification_request, decode_result,
                     network_func, PaymentConfirmedListener, PayPalModule, PayPalOrderVerifier, open_cache,
                     TaskRepository, expire_stale_tasks, UnitPayError, PersistenceError, TaskTimeoutError)
from unitpay.metadata import UNITPAY_ABI

load_dotenv()

BACKEND_URL = os.getenv('API_BASE_URL', "http://localhost:4000/api")
LOCAL_URL = os.getenv('LOCAL_URL')


class ClickNotifier:
    def show_spinner(self, text):
        click.echo(text)

    def hide_spinner(self):
        pass

    def show_error(self, text):
        click.echo(f"Error: {text}", err=True)

    def show_success(self, text):
        click.echo(text)


def _backend_url(local):
    if local:
        return LOCAL_URL or "http://localhost:4000/api"
    return BACKEND_URL


def _request_error(e):
    if e.response is not None:
        try:
            return e.response.json().get("message") or e.response.text
        except ValueError:
            return e.response.text
    return str(e)


@click.group()
@click.option('--log-level', default=None, help='Logging level (defaults to LOG_LEVEL or INFO)')
def cli(log_level):
    configure_logging(log_level or Config().log_level)


@cli.command()
@click.option('--amount', required=True, type=str, help='Payment amount')
@click.option('--merchant-email', required=True, help='Merchant PayPal email')
@click.option('--counterparty-email', default=None, help='LP PayPal email')
@click.option('--currency', default='USD', help='Currency code')
@click.option('--description', default=None, help='Free-text description')
@click.option('--local', is_flag=True, default=False, help='If developing locally, uses env Local URL var.')
def create_intent(amount, merchant_email, counterparty_email, currency, description, local):
    """
    Registers a payment intent with the backend.
    """
    url = _backend_url(local)
    try:
        res = requests.post(f"{url}/payment-intents", json={
            "amount": amount,
            "merchant_email": merchant_email,
            "counterparty_email": counterparty_email,
            "currency": currency,
            "description": description,
        }, headers={"X-API-KEY": os.getenv("UNITPAY_API_KEY", "")}, timeout=15)
        res.raise_for_status()
    except requests.RequestException as e:
        click.echo(f"Failed to create payment intent: {_request_error(e)}", err=True)
        sys.exit(1)
    click.echo(json.dumps(res.json()["data"], indent=2))


@cli.command()
@click.option('--payment-intent-id', required=True, help='Payment intent ID')
@click.option('--local', is_flag=True, default=False, help='If developing locally, uses env Local URL var.')
def merchant_info(payment_intent_id, local):
    """
    Resolves the merchant PayPal email for a payment intent.
    """
    email = fetch_merchant_info(payment_intent_id, api_base_url=_backend_url(local), notifier=ClickNotifier())
    if email is None:
        sys.exit(1)
    click.echo(email)


@cli.command()
@click.option('--order-id', required=True, help='PayPal order ID')
@click.option('--merchant-email', required=True, help='Merchant PayPal email')
@click.option('--amount', required=True, type=str, help='Expected amount')
@click.option('--lp-email', required=True, help='LP (payer) PayPal email')
@click.option('--paypal', 'use_paypal', is_flag=True, default=False, help='Check the order against the PayPal API')
def verify(order_id, merchant_email, amount, lp_email, use_paypal):
    """
    Runs the off-chain verification handler and prints the 32-byte result.
    """
    verifier = None
    if use_paypal:
        config = Config()
        verifier = PayPalOrderVerifier(PayPalModule(sandbox=config.paypal_sandbox))
    try:
        result = handle_verification_request([order_id, merchant_email, amount, lp_email], verifier=verifier)
    except UnitPayError as e:
        click.echo(f"Verification request rejected: {e}", err=True)
        sys.exit(1)
    click.echo(f"0x{result.hex()}")
    click.echo(f"verified: {decode_result(result)}")


@cli.command()
@click.option('--payment-id', required=True, help='On-chain payment ID')
@click.option('--timeout', default=None, type=float, help='Seconds to wait (default: forever)')
@click.option('--rpc-url', default=None, help='RPC endpoint (defaults to RPC_URL)')
@click.option('--contract-address', default=None, help='Contract address (defaults to CONTRACT_ADDRESS)')
@click.option('--local', is_flag=True, default=False, help='If developing locally, uses env Local URL var.')
def wait_confirmation(payment_id, timeout, rpc_url, contract_address, local):
    """
    Waits for the payment's PaymentConfirmed event, then refreshes the task pool.
    """
    config = Config()
    url = _backend_url(local)
    w3, _ = network_func(rpc_url=rpc_url or config.rpc_url)
    contract = w3.eth.contract(address=contract_address or config.contract_address, abi=UNITPAY_ABI)

    def refresh_task_pool():
        try:
            res = requests.get(f"{url}/tasks", timeout=15)
            res.raise_for_status()
        except requests.RequestException as e:
            click.echo(f"Could not refresh task pool: {_request_error(e)}", err=True)
            return
        click.echo(f"Task pool: {len(res.json().get('data', []))} tasks")

    listener = PaymentConfirmedListener(w3, contract, notifier=ClickNotifier(), refresh_task_pool=refresh_task_pool)
    try:
        listener.listen_once(payment_id, timeout=timeout)
    except TaskTimeoutError as e:
        click.echo(str(e), err=True)
        sys.exit(1)


@cli.command()
@click.option('--cache-dir', default=None, help='Cache directory (defaults to CACHE_DIR)')
@click.option('--no-requeue', is_flag=True, default=False, help='Leave timed-out tasks failed')
def expire_tasks(cache_dir, no_requeue):
    """
    Fails processing tasks that ran past their timeout.
    """
    try:
        cache = open_cache(cache_dir or Config().cache_dir)
        with cache:
            expired = expire_stale_tasks(TaskRepository(cache), requeue=not no_requeue)
    except PersistenceError as e:
        click.echo(f"Store unavailable: {e}", err=True)
        sys.exit(1)
    for task in expired:
        click.echo(f"task {task.id}: {task.status} (retries {task.retry_count}/{task.max_retries})")
    click.echo(f"{len(expired)} task(s) expired")


if __name__ == "__main__":
    cli()
