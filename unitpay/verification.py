import logging

from eth_abi import encode

from unitpay.errors import UnitPayError, ValidationError
from unitpay.metadata import RESULT_WIDTH, STATUS_MAP
from unitpay.models import VerificationRequest

logger = logging.getLogger("UnitPayVerification")


def encode_result(verified: bool) -> bytes:
    """32-byte big-endian flag: every byte zero except the last, which is 1 on success."""
    buffer = bytearray(RESULT_WIDTH)
    buffer[-1] = STATUS_MAP['verified'] if verified else STATUS_MAP['unverified']
    return bytes(buffer)


def encode_uint256(value: int) -> bytes:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError(f"uint256 value must be an int, got {type(value).__name__}")
    if value < 0 or value >= 2 ** 256:
        raise ValidationError(f"{value} does not fit in uint256")
    return encode(['uint256'], [value])


def decode_result(payload: bytes) -> bool:
    if len(payload) != RESULT_WIDTH:
        raise ValidationError(f"Verification result must be {RESULT_WIDTH} bytes, got {len(payload)}")
    if any(payload[:-1]) or payload[-1] not in STATUS_MAP.values():
        raise ValidationError(f"Verification result is not a 0/1 flag: 0x{bytes(payload).hex()}")
    return payload[-1] == STATUS_MAP['verified']


def handle_verification_request(args, verifier=None) -> bytes:
    """
    Validates oracle arguments and returns the encoded verification flag.

    With no ``verifier`` every well-formed request is reported as verified. A verifier is any
    callable taking a VerificationRequest and returning a truthy value for a valid payment.
    """
    request = VerificationRequest.from_args(args)
    logger.info(
        f"Verifying order {request.order_id} for merchant {request.merchant_email} "
        f"with amount {request.amount}"
    )

    if verifier is None:
        return encode_result(True)

    try:
        verified = bool(verifier(request))
    except UnitPayError as e:
        logger.warning(f"Verification of order {request.order_id} errored: {e}")
        verified = False

    logger.info(f"Order {request.order_id} verified={verified}")
    return encode_result(verified)
