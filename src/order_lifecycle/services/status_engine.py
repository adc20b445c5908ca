"""Order status transition engine.

The only component allowed to move ``order_status`` along the transition
table. Edges live in the ``order_state_transitions`` table and are looked up
on every call.
"""

from typing import Any, Dict, List, Optional

from order_lifecycle.core.errors import AuthError, ConflictError, NotFoundError, ValidationError
from order_lifecycle.core.logger import setup_logger
from order_lifecycle.core.monitoring import set_order_context
from order_lifecycle.db.models import OrderStateTransition, OrderStatusHistory
from order_lifecycle.db.repository import OrderRepository
from order_lifecycle.models.order import StatusUpdateResult
from order_lifecycle.models.status import (
    PERMISSION_RANK,
    AdminPermission,
    StatusActor,
    coarse_status_for,
    parse_order_status,
)

logger = setup_logger(__name__)


class StatusTransitionEngine:
    """Validates and applies order status transitions."""

    def __init__(self, repository: OrderRepository):
        self.repository = repository

    async def update_order_status(
        self,
        order_id: str,
        new_status: str,
        actor: StatusActor = StatusActor.SYSTEM,
        actor_user_id: Optional[str] = None,
        reason_code: Optional[str] = None,
        reason_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        actor_permission: Optional[AdminPermission] = None,
        free_comment: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> StatusUpdateResult:
        """
        Move an order to ``new_status``.

        Checks, in order: the status is known, the order exists, the order is
        not already there (no-op success), the edge exists, the actor may use
        it, a reason is given when the edge asks for one. The update is a
        conditional write on the status that was read, with the history row
        in the same transaction.

        Raises:
            ValidationError: INVALID_STATUS, REASON_REQUIRED
            NotFoundError: ORDER_NOT_FOUND
            ConflictError: INVALID_TRANSITION, CONCURRENT_MODIFICATION
            AuthError: FORBIDDEN
        """
        target = parse_order_status(new_status)
        if target is None:
            raise ValidationError("INVALID_STATUS", f"Unknown order status '{new_status}'")
        actor = StatusActor(actor)

        order = await self.repository.get_order(order_id)
        if order is None:
            raise NotFoundError("ORDER_NOT_FOUND", f"Order {order_id} not found")
        set_order_context(order_id, **{"order.status": order.order_status})

        current = order.order_status
        if current == target.value:
            logger.info(f"Order {order_id} already {target.value}, nothing to do", extra={"order_id": order_id})
            return StatusUpdateResult(
                success=True,
                order_id=order_id,
                old_status=current,
                new_status=target.value,
                message="Order already in requested status",
            )

        transition = await self.repository.get_transition(current, target.value)
        if transition is None:
            raise ConflictError(
                "INVALID_TRANSITION",
                f"Transition from {current} to {target.value} is not allowed",
            )

        self._check_permission(transition, actor, actor_permission)

        if transition.requires_reason and not (reason_code or reason_message):
            raise ValidationError(
                "REASON_REQUIRED",
                f"A reason is required to move an order from {current} to {target.value}",
            )

        history = {
            "previous_status": current,
            "new_status": target.value,
            "changed_by": actor.value,
            "changed_by_user_id": actor_user_id,
            "reason_code": reason_code,
            "reason_message": reason_message,
            "free_comment": free_comment,
            "meta": metadata or {},
            "ip_address": ip_address,
            "user_agent": user_agent,
        }
        values = {"order_status": target.value}
        coarse = coarse_status_for(target, order.status)
        if coarse != order.status:
            values["status"] = coarse

        applied, history_id = await self.repository.compare_and_set(
            order_id,
            expected={"order_status": current},
            values=values,
            history=history,
        )

        if not applied:
            latest = await self.repository.get_order(order_id)
            if latest is not None and latest.order_status == target.value:
                logger.info(
                    f"Order {order_id} reached {target.value} through a concurrent update",
                    extra={"order_id": order_id},
                )
                return StatusUpdateResult(
                    success=True,
                    order_id=order_id,
                    old_status=current,
                    new_status=target.value,
                    message="Order already in requested status",
                )
            raise ConflictError(
                "CONCURRENT_MODIFICATION",
                f"Order {order_id} changed while updating from {current}; reload and retry",
            )

        logger.info(
            f"Order {order_id} moved {current} -> {target.value} by {actor.value}",
            extra={"order_id": order_id},
        )
        return StatusUpdateResult(
            success=True,
            order_id=order_id,
            old_status=current,
            new_status=target.value,
            history_id=history_id,
            auto_notify=transition.auto_notify_customer,
            message="Status updated",
        )

    @staticmethod
    def _check_permission(
        transition: OrderStateTransition,
        actor: StatusActor,
        actor_permission: Optional[AdminPermission],
    ) -> None:
        if actor == StatusActor.CUSTOMER and not transition.is_customer_allowed:
            raise AuthError(
                "FORBIDDEN",
                f"Customers cannot move an order from {transition.from_status} to {transition.to_status}",
            )
        if actor == StatusActor.ADMIN:
            held = PERMISSION_RANK[AdminPermission(actor_permission or AdminPermission.READ_ONLY)]
            required = PERMISSION_RANK[AdminPermission(transition.requires_permission)]
            if held < required:
                raise AuthError(
                    "FORBIDDEN",
                    f"Permission '{transition.requires_permission}' required for this transition",
                )

    async def list_transitions(self, from_status: str) -> List[OrderStateTransition]:
        """Edges leaving ``from_status``."""
        status = parse_order_status(from_status)
        if status is None:
            raise ValidationError("INVALID_STATUS", f"Unknown order status '{from_status}'")
        return await self.repository.list_transitions(status.value)

    async def get_history(self, order_id: str) -> List[OrderStatusHistory]:
        """Status history of an order, newest first."""
        order = await self.repository.get_order(order_id)
        if order is None:
            raise NotFoundError("ORDER_NOT_FOUND", f"Order {order_id} not found")
        return await self.repository.get_history(order_id)
