"""Seeding of the order state transition table."""

from order_lifecycle.config.constants import DEFAULT_TRANSITIONS
from order_lifecycle.core.logger import setup_logger

from .repository import OrderRepository

logger = setup_logger(__name__)


def default_transition_rows():
    for from_status, to_status, permission, customer, reason, notify, description in DEFAULT_TRANSITIONS:
        yield {
            "from_status": from_status.value,
            "to_status": to_status.value,
            "requires_permission": permission.value,
            "is_customer_allowed": customer,
            "requires_reason": reason,
            "auto_notify_customer": notify,
            "description": description,
        }


async def seed_transitions(repository: OrderRepository) -> int:
    """Load the default transition table when it is empty.

    Returns the number of inserted rows. An already populated table is left
    alone so operators can edit edges in the database.
    """
    existing = await repository.count_transitions()
    if existing:
        logger.info(f"Transition table already holds {existing} edges, skipping seed")
        return 0

    inserted = await repository.add_transitions(default_transition_rows())
    logger.info(f"Seeded {inserted} order state transitions")
    return inserted
