import re

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


class InvalidIdentifierError(ValueError):
    def __init__(self, field: str, value):
        self.field = field
        self.value = value
        super().__init__(f"Invalid {field}: {value!r}")


class UnknownTenantError(LookupError):
    def __init__(self, tenant: str):
        self.tenant = tenant
        super().__init__(f"Unknown tenant: {tenant}")


def validate_identifier(value, field: str) -> str:
    """Ids end up in channel names, so ':' and whitespace are rejected."""
    if not isinstance(value, str) or not IDENTIFIER_PATTERN.match(value):
        raise InvalidIdentifierError(field, value)
    return value
