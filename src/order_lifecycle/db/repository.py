"""Repository for order store data access.

Every method runs in its own short transaction opened from the injected
session factory. Status columns are only ever written through
``compare_and_set``, whose affected-row count tells the caller whether it
won the race.
"""

import functools
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from order_lifecycle.core.errors import ConflictError, NotFoundError, PersistenceError
from order_lifecycle.core.logger import setup_logger

from .base import utcnow
from .models import Order, OrderAnomaly, OrderItem, OrderStateTransition, OrderStatusHistory

logger = setup_logger(__name__)


def _wrap_db_errors(method):
    """Re-raise SQLAlchemy failures as PersistenceError."""

    @functools.wraps(method)
    async def wrapper(*args, **kwargs):
        try:
            return await method(*args, **kwargs)
        except SQLAlchemyError as e:
            logger.error(f"Database error in {method.__name__}: {e}")
            raise PersistenceError(f"Database error in {method.__name__}") from e

    return wrapper


class OrderRepository:
    """Data access layer for orders, history, anomalies and transitions."""

    def __init__(self, session_factory):
        """Initialize repository with an async session factory."""
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    @_wrap_db_errors
    async def get_order(self, order_id: str) -> Optional[Order]:
        async with self.session_factory() as session:
            return await session.get(Order, order_id)

    @_wrap_db_errors
    async def get_order_by_tracking_number(self, tracking_number: str) -> Optional[Order]:
        """Most recent order shipped under a tracking number."""
        query = (
            select(Order)
            .where(Order.tracking_number == tracking_number)
            .order_by(Order.created_at.desc())
            .limit(1)
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return result.scalars().first()

    @_wrap_db_errors
    async def get_order_by_stripe_session(self, session_id: str) -> Optional[Order]:
        query = select(Order).where(Order.stripe_session_id == session_id).limit(1)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return result.scalars().first()

    @_wrap_db_errors
    async def get_order_by_payment_reference(self, payment_reference: str) -> Optional[Order]:
        query = select(Order).where(Order.payment_reference == payment_reference).limit(1)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return result.scalars().first()

    @_wrap_db_errors
    async def create_order(self, items: Optional[List[Dict[str, Any]]] = None, **fields) -> Order:
        """
        Insert an order and its items.

        Args:
            items: Dicts with product_id, quantity, unit_price, product_snapshot
            **fields: Order columns

        Returns:
            The persisted Order
        """
        order = Order(**fields)
        async with self.session_factory() as session:
            async with session.begin():
                session.add(order)
                await session.flush()
                for item in items or []:
                    session.add(
                        OrderItem(
                            order_id=order.id,
                            product_id=item["product_id"],
                            quantity=item["quantity"],
                            unit_price=item["unit_price"],
                            total_price=item["quantity"] * item["unit_price"],
                            product_snapshot=item["product_snapshot"],
                        )
                    )
        return order

    @_wrap_db_errors
    async def get_items(self, order_id: str) -> List[OrderItem]:
        query = select(OrderItem).where(OrderItem.order_id == order_id)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    @_wrap_db_errors
    async def compare_and_set(
        self,
        order_id: str,
        expected: Dict[str, Any],
        values: Dict[str, Any],
        history: Optional[Dict[str, Any]] = None,
    ) -> Tuple[bool, Optional[str]]:
        """
        Conditionally update an order.

        The UPDATE only matches when every column in ``expected`` still holds
        the given value. When it matches and ``history`` is given, the history
        row is inserted in the same transaction.

        Returns:
            (applied, history_id). applied is False when zero rows matched.

        Raises:
            ConflictError: PAYMENT_ORDER_MISMATCH when the new
                payment_reference already belongs to another order
        """
        conditions = [Order.id == order_id]
        conditions.extend(getattr(Order, column) == value for column, value in expected.items())
        stmt = (
            update(Order)
            .where(*conditions)
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    if result.rowcount == 0:
                        return False, None

                    history_id = None
                    if history is not None:
                        row = OrderStatusHistory(order_id=order_id, **history)
                        session.add(row)
                        await session.flush()
                        history_id = row.id
        except IntegrityError:
            if "payment_reference" not in values:
                raise
            logger.warning(
                f"Payment reference {values['payment_reference']} already settles another order",
                extra={"order_id": order_id},
            )
            raise ConflictError(
                "PAYMENT_ORDER_MISMATCH",
                "This payment has already been applied to another order",
            )
        return True, history_id

    # ------------------------------------------------------------------
    # Status history
    # ------------------------------------------------------------------

    @_wrap_db_errors
    async def add_history(self, order_id: str, **fields) -> OrderStatusHistory:
        row = OrderStatusHistory(order_id=order_id, **fields)
        async with self.session_factory() as session:
            async with session.begin():
                session.add(row)
        return row

    @_wrap_db_errors
    async def get_history(self, order_id: str) -> List[OrderStatusHistory]:
        """Status history of an order, newest first."""
        query = (
            select(OrderStatusHistory)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.created_at.desc())
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Transition table
    # ------------------------------------------------------------------

    @_wrap_db_errors
    async def get_transition(self, from_status: str, to_status: str) -> Optional[OrderStateTransition]:
        query = select(OrderStateTransition).where(
            OrderStateTransition.from_status == from_status,
            OrderStateTransition.to_status == to_status,
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return result.scalars().first()

    @_wrap_db_errors
    async def list_transitions(self, from_status: str) -> List[OrderStateTransition]:
        query = (
            select(OrderStateTransition)
            .where(OrderStateTransition.from_status == from_status)
            .order_by(OrderStateTransition.id)
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    @_wrap_db_errors
    async def count_transitions(self) -> int:
        async with self.session_factory() as session:
            result = await session.execute(select(func.count(OrderStateTransition.id)))
            return result.scalar_one()

    @_wrap_db_errors
    async def add_transitions(self, rows: Iterable[Dict[str, Any]]) -> int:
        transitions = [OrderStateTransition(**row) for row in rows]
        async with self.session_factory() as session:
            async with session.begin():
                session.add_all(transitions)
        return len(transitions)

    # ------------------------------------------------------------------
    # Anomalies
    # ------------------------------------------------------------------

    async def _find_anomaly_by_key(self, session, order_id: str, source_event_key: str) -> Optional[OrderAnomaly]:
        query = select(OrderAnomaly).where(
            OrderAnomaly.order_id == order_id,
            OrderAnomaly.source_event_key == source_event_key,
        )
        result = await session.execute(query)
        return result.scalars().first()

    @_wrap_db_errors
    async def insert_anomaly(
        self,
        fields: Dict[str, Any],
        attention_reason: Optional[str] = None,
    ) -> Tuple[OrderAnomaly, bool]:
        """
        Insert an anomaly and flag its order in one transaction.

        ``anomaly_count`` is incremented in SQL. ``requires_attention`` is
        only ever set here, never cleared. An anomaly whose
        ``source_event_key`` was already recorded for the order is returned
        as is.

        Returns:
            (anomaly, created)
        """
        order_id = fields["order_id"]
        source_event_key = fields.get("source_event_key")

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    if source_event_key:
                        existing = await self._find_anomaly_by_key(session, order_id, source_event_key)
                        if existing is not None:
                            return existing, False

                    anomaly = OrderAnomaly(**fields)
                    session.add(anomaly)

                    values = {
                        "anomaly_count": Order.anomaly_count + 1,
                        "has_anomaly": True,
                        "updated_at": utcnow(),
                    }
                    if attention_reason:
                        values["requires_attention"] = True
                        values["attention_reason"] = attention_reason

                    result = await session.execute(
                        update(Order)
                        .where(Order.id == order_id)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 0:
                        raise NotFoundError("ORDER_NOT_FOUND", f"Order {order_id} not found")
                    await session.flush()
            return anomaly, True
        except IntegrityError:
            # A concurrent delivery of the same event won the insert
            if not source_event_key:
                raise
            async with self.session_factory() as session:
                existing = await self._find_anomaly_by_key(session, order_id, source_event_key)
            if existing is None:
                raise
            return existing, False

    @_wrap_db_errors
    async def get_anomaly(self, anomaly_id: str) -> Optional[OrderAnomaly]:
        async with self.session_factory() as session:
            return await session.get(OrderAnomaly, anomaly_id)

    @_wrap_db_errors
    async def update_anomaly(self, anomaly_id: str, values: Dict[str, Any], only_if_unset: Optional[str] = None) -> bool:
        """
        Update an anomaly.

        Args:
            only_if_unset: Column that must still be NULL for the update
                to apply (e.g. ``escalated_at``)

        Returns:
            True when a row was updated
        """
        conditions = [OrderAnomaly.id == anomaly_id]
        if only_if_unset:
            conditions.append(getattr(OrderAnomaly, only_if_unset).is_(None))
        stmt = (
            update(OrderAnomaly)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(stmt)
                return result.rowcount > 0

    @_wrap_db_errors
    async def increment_anomaly_retry(self, anomaly_id: str, next_retry_at: datetime) -> None:
        stmt = (
            update(OrderAnomaly)
            .where(OrderAnomaly.id == anomaly_id)
            .values(retry_count=OrderAnomaly.retry_count + 1, next_retry_at=next_retry_at)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(stmt)

    @_wrap_db_errors
    async def resolve_anomaly(
        self,
        anomaly_id: str,
        values: Dict[str, Any],
        attention_severities: Iterable[str],
    ) -> bool:
        """
        Mark an anomaly resolved and release its order's attention flag.

        The flag is cleared only when no unresolved anomaly with one of
        ``attention_severities`` remains on the order.

        Returns:
            True when this call resolved the anomaly, False if it already was
        """
        async with self.session_factory() as session:
            async with session.begin():
                anomaly = await session.get(OrderAnomaly, anomaly_id)
                if anomaly is None:
                    raise NotFoundError("ANOMALY_NOT_FOUND", f"Anomaly {anomaly_id} not found")

                result = await session.execute(
                    update(OrderAnomaly)
                    .where(OrderAnomaly.id == anomaly_id, OrderAnomaly.resolved_at.is_(None))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    return False

                remaining = await session.execute(
                    select(func.count(OrderAnomaly.id)).where(
                        OrderAnomaly.order_id == anomaly.order_id,
                        OrderAnomaly.resolved_at.is_(None),
                        OrderAnomaly.severity.in_(list(attention_severities)),
                    )
                )
                if remaining.scalar_one() == 0:
                    await session.execute(
                        update(Order)
                        .where(Order.id == anomaly.order_id)
                        .values(requires_attention=False, attention_reason=None, updated_at=utcnow())
                        .execution_options(synchronize_session=False)
                    )
        return True

    @_wrap_db_errors
    async def list_anomalies(
        self,
        order_id: Optional[str] = None,
        unresolved_only: bool = False,
        limit: int = 100,
    ) -> List[OrderAnomaly]:
        query = select(OrderAnomaly)
        if order_id:
            query = query.where(OrderAnomaly.order_id == order_id)
        if unresolved_only:
            query = query.where(OrderAnomaly.resolved_at.is_(None))
        query = query.order_by(OrderAnomaly.detected_at.desc()).limit(limit)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    @_wrap_db_errors
    async def list_overdue_anomalies(
        self,
        severities: Iterable[str],
        detected_before: datetime,
        limit: int = 100,
    ) -> List[OrderAnomaly]:
        """Unresolved, unescalated anomalies detected before a cutoff."""
        query = (
            select(OrderAnomaly)
            .where(
                OrderAnomaly.resolved_at.is_(None),
                OrderAnomaly.escalated.is_(False),
                OrderAnomaly.severity.in_(list(severities)),
                OrderAnomaly.detected_at < detected_before,
            )
            .order_by(OrderAnomaly.detected_at)
            .limit(limit)
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())
