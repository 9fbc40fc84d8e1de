"""Voucher code generation."""

import secrets
import string

CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_voucher_code(prefix: str = "VC", length: int = 9) -> str:
    """
    Generate a random voucher code such as ``VC-7QK2M9ZXA``.

    Uniqueness is enforced by the store; a collision is retried by the
    allocator with a fresh code.
    """
    body = "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))
    return f"{prefix}-{body}" if prefix else body
