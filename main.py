from flask import Flask, jsonify, request, abort, Response, stream_with_context
import os
import atexit
import logging
from functools import wraps

from dotenv import load_dotenv

from unitpay import (Config, configure_logging, open_cache, PaymentIntentRepository, TaskRepository, PaymentIntent,
                     Task, LogRelay, RelayHandler, PayPalModule, PayPalOrderVerifier, handle_verification_request,
                     decode_result, ValidationError, NotFoundError, PersistenceError, PAYMENT_STATUSES)

load_dotenv()

GIT_COMMIT = os.getenv('GIT_COMMIT_HASH', 'unknown')
BUILD_TIME = os.getenv('BUILD_TIME', 'unknown')

logger = logging.getLogger("UnitPayAPI")


def _error(message, status):
    return jsonify({"success": False, "message": message}), status


def _int_field(data, name, default):
    value = data.get(name, default)
    if isinstance(value, (bool, float)):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer, got {value!r}")


def build_verifier(config):
    if not (config.paypal_client_id and config.paypal_client_secret):
        logger.warning("PayPal credentials not set; verification requests are accepted without an order lookup")
        return None
    paypal = PayPalModule(sandbox=config.paypal_sandbox, client_id=config.paypal_client_id,
                          client_secret=config.paypal_client_secret)
    return PayPalOrderVerifier(paypal)


# Flask App Factory
def create_app(config=None, cache=None, relay=None, verifier=None):
    config = config or Config()
    cache = cache if cache is not None else open_cache(config.cache_dir)
    intents = PaymentIntentRepository(cache)
    tasks = TaskRepository(cache)

    app = Flask(__name__)
    app.extensions["unitpay"] = {"config": config, "intents": intents, "tasks": tasks, "relay": relay}

    if relay is not None:
        relay.start()
        logging.getLogger().addHandler(RelayHandler(relay))

    def require_api_key(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            if config.api_key and request.headers.get("X-API-KEY") != config.api_key:
                abort(401, description="Invalid or missing API key")
            return f(*args, **kwargs)
        return decorated

    def json_body():
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("Expected a JSON object body")
        return data

    @app.errorhandler(ValidationError)
    def handle_validation(e):
        return _error(str(e), 400)

    @app.errorhandler(NotFoundError)
    def handle_not_found(e):
        return _error(str(e), 404)

    @app.errorhandler(PersistenceError)
    def handle_persistence(e):
        logger.error(f"Store unavailable: {e}")
        return _error("Storage unavailable", 503)

    @app.errorhandler(401)
    def handle_unauthorized(e):
        return _error(e.description, 401)

    @app.route("/api/health", methods=["GET"])
    def health_check():
        return jsonify({
            "status": "ok",
            "git_commit": GIT_COMMIT,
            "build_time": BUILD_TIME,
        })

    @app.route("/api/payment/paypal/merchant-info/<int:payment_intent_id>", methods=["GET"])
    def merchant_info(payment_intent_id):
        intent = intents.get(payment_intent_id)
        if intent is None:
            return _error(f"Payment intent {payment_intent_id} not found", 404)
        if not intent.merchant_email:
            return _error(f"Payment intent {payment_intent_id} has no merchant PayPal email", 404)
        return jsonify({
            "success": True,
            "data": {"email": intent.merchant_email, "payment_intent_id": intent.id}
        }), 200

    @app.route("/api/payment-intents", methods=["POST"])
    @require_api_key
    def create_payment_intent():
        data = json_body()
        if data.get("amount") is None:
            raise ValidationError("amount is required")
        intent = PaymentIntent(
            amount=data["amount"],
            merchant_email=data.get("merchant_email"),
            counterparty_email=data.get("counterparty_email"),
            currency=data.get("currency") or "USD",
            description=data.get("description"),
        )
        intents.create(intent)
        return jsonify({"success": True, "data": intent.to_dict()}), 201

    @app.route("/api/payment-intents/<int:payment_intent_id>", methods=["GET"])
    def get_payment_intent(payment_intent_id):
        intent = intents.require(payment_intent_id)
        return jsonify({"success": True, "data": intent.to_dict()}), 200

    @app.route("/api/payment-intents/<int:payment_intent_id>/status", methods=["POST"])
    @require_api_key
    def update_payment_status(payment_intent_id):
        data = json_body()
        status = data.get("status")
        if status not in PAYMENT_STATUSES:
            raise ValidationError(f"status must be one of {PAYMENT_STATUSES}")
        intent = intents.require(payment_intent_id)
        if intent.transition_to(status, note=data.get("note")):
            intents.update(intent)
            logger.info(f"PaymentIntent {intent.id} moved to {status}")
        return jsonify({"success": True, "data": intent.to_dict()}), 200

    @app.route("/api/payment-intents/<int:payment_intent_id>/blockchain-id", methods=["POST"])
    @require_api_key
    def set_blockchain_payment_id(payment_intent_id):
        data = json_body()
        intent = intents.require(payment_intent_id)
        if intent.assign_blockchain_payment_id(data.get("blockchain_payment_id")):
            intents.update(intent)
        return jsonify({"success": True, "data": intent.to_dict()}), 200

    @app.route("/api/verify", methods=["POST"])
    def verify():
        data = json_body()
        result = handle_verification_request(data.get("args"), verifier=verifier)
        return jsonify({"result": "0x" + result.hex(), "verified": decode_result(result)}), 200

    @app.route("/api/tasks", methods=["POST"])
    @require_api_key
    def create_task():
        data = json_body()
        task = Task(
            type=data.get("type"),
            data=data.get("data") or {},
            max_retries=_int_field(data, "max_retries", config.task_max_retries),
            processing_timeout=_int_field(data, "processing_timeout", config.task_processing_timeout_ms),
        )
        tasks.create(task)
        return jsonify({"success": True, "data": task.to_dict()}), 201

    @app.route("/api/tasks", methods=["GET"])
    def list_tasks():
        status = request.args.get("status")
        records = tasks.by_status(status) if status else tasks.list()
        return jsonify({"success": True, "data": [t.to_dict() for t in records]}), 200

    @app.route("/api/tasks/<int:task_id>", methods=["GET"])
    def get_task(task_id):
        task = tasks.require(task_id)
        return jsonify({"success": True, "data": task.to_dict()}), 200

    @app.route("/api/logs/stream", methods=["GET"])
    def log_stream():
        if relay is None or not relay.running:
            return _error("Log relay is disabled", 404)
        client = relay.connect()

        def generate():
            try:
                yield from relay.sse(client)
            finally:
                relay.disconnect(client)

        return Response(stream_with_context(generate()), mimetype="text/event-stream")

    return app


if __name__ == "__main__":
    config = Config()
    configure_logging(config.log_level)
    logger.info(f"Git Commit Hash: {GIT_COMMIT}")
    logger.info(f"Build Timestamp: {BUILD_TIME}")
    logger.info('Starting UnitPay API...')

    relay = LogRelay()
    atexit.register(relay.close)

    app = create_app(config=config, relay=relay, verifier=build_verifier(config))
    app.run(host='0.0.0.0', debug=True, use_reloader=False, port=config.port, threaded=True)
