from datetime import datetime
import secrets


def generate_appointment_id(now: datetime) -> str:
    """Human-displayable appointment code, e.g. ``APPT-20240501-3FA9C1``."""
    return f"APPT-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"


def generate_queue_id() -> str:
    """Queue ticket code, e.g. ``Q-7C21E90B``."""
    return f"Q-{secrets.token_hex(4).upper()}"
