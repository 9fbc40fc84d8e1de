"""Identifier parsing."""

from uuid import UUID

from voucher_service.errors import InvalidInput


def parse_uuid(value: UUID | str, what: str = "id") -> UUID:
    """
    Parse a caller-supplied identifier.

    Raises:
        InvalidInput: If the value is not a well-formed UUID.
    """
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError) as e:
        raise InvalidInput(f"Invalid {what}: {value!r}") from e


def require_text(value: str | None, what: str) -> str:
    """
    Ensure a caller-supplied identifier is a non-blank string.

    Raises:
        InvalidInput: If the value is missing or blank.
    """
    if value is None or not str(value).strip():
        raise InvalidInput(f"{what} is required")
    return str(value).strip()
