"""ULID generation helper utilities."""

import ulid


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ulid.ULID())


def generate_prefixed_id(prefix: str) -> str:
    """Generate a record id such as ``viol_01J...`` for log entries."""
    return f"{prefix}_{generate_ulid()}"

