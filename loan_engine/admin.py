"""
Loan Administration Module

Permission-gated escape hatch for operations staff. An administrative update
may set any status directly, bypassing the lifecycle transition table, so
every use is logged at warning level and written to the audit trail with
the previous and new values.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set
from enum import Enum

from .audit import AuditEvent, AuditEventType, AuditTrail
from .loans import Loan, LoanManager, LoanStatus
from .schemas import UpdateLoanRequest
from .exceptions import ForbiddenError, InvalidStateError
from .logging_config import get_logger, log_action


class Permission(Enum):
    """Administrative permissions"""
    ADMIN_UPDATE_LOAN = "admin_update_loan"
    VIEW_AUDIT_LOG = "view_audit_log"


@dataclass(frozen=True)
class AdminActor:
    """Authenticated staff member acting on loans"""
    user_id: str
    permissions: Set[Permission] = field(default_factory=set)

    def has_permission(self, permission: Permission) -> bool:
        """Check if actor has a specific permission"""
        return permission in self.permissions


class LoanAdministration:
    """Administrative loan operations"""

    def __init__(self, loan_manager: LoanManager, audit_trail: AuditTrail):
        self.loan_manager = loan_manager
        self.audit_trail = audit_trail
        self.logger = get_logger("loan_engine.admin")

    def _require(self, actor: AdminActor, permission: Permission) -> None:
        if not actor.has_permission(permission):
            raise ForbiddenError(f"User {actor.user_id} lacks permission {permission.value}")

    def update_loan(
        self,
        loan_id: str,
        request: UpdateLoanRequest,
        actor: AdminActor,
        now: Optional[datetime] = None
    ) -> Loan:
        """
        Patch a loan's status, notes or metadata

        Args:
            loan_id: Loan to patch
            request: Fields to change; unset fields are left alone
            actor: Staff member, must hold ADMIN_UPDATE_LOAN
            now: Update time (defaults to current UTC time)

        Returns:
            Updated Loan

        Raises:
            ForbiddenError: If the actor lacks the permission
            InvalidStateError: If the status value is unknown
        """
        self._require(actor, Permission.ADMIN_UPDATE_LOAN)
        now = now or datetime.now(timezone.utc)

        new_status = None
        if request.status is not None:
            try:
                new_status = LoanStatus(request.status)
            except ValueError:
                raise InvalidStateError(f"Unknown loan status: {request.status}")

        manager = self.loan_manager
        with manager.locks.hold(loan_id), manager.storage.atomic():
            loan = manager.require_loan(loan_id)
            previous: Dict[str, Any] = {}
            changes: Dict[str, Any] = {}

            if new_status is not None and new_status != loan.status:
                previous['status'] = loan.status.value
                changes['status'] = new_status.value
                loan.status = new_status
                if new_status == LoanStatus.COMPLETED:
                    loan.completed_at = now
                elif new_status == LoanStatus.DEFAULTED:
                    loan.defaulted_at = now

            if request.notes is not None:
                previous['notes'] = loan.notes
                changes['notes'] = request.notes
                loan.notes = request.notes

            if request.metadata is not None:
                previous['metadata'] = loan.metadata
                changes['metadata'] = request.metadata
                loan.metadata = dict(request.metadata)

            loan.updated_at = now
            manager.save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_ADMIN_UPDATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"previous": previous, "new": changes},
                user_id=actor.user_id
            )

        log_action(
            self.logger, "warning", "Administrative loan update",
            user_id=actor.user_id, action="admin_update_loan", resource=f"loan:{loan.id}",
            extra={"previous": previous, "new": changes}
        )
        return loan

    def get_loan_history(self, loan_id: str, actor: AdminActor) -> List[AuditEvent]:
        """Audit events for a loan, oldest first"""
        self._require(actor, Permission.VIEW_AUDIT_LOG)
        return self.audit_trail.get_events_for_entity("loan", loan_id)
