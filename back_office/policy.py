"""
Authorization Policy Module

Role-to-operation permission table. ``allow`` is a pure decision function
consulted by the workflow engine and by every direct mutation entry point;
``require`` is the raising form used inside the core.

An actor role of ``None`` means the caller is unauthenticated (self-service).
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional

from .errors import ForbiddenError


class Role(Enum):
    """Identity roles"""
    CUSTOMER = "customer"
    TELLER = "teller"
    ADMIN = "admin"


class Operation(Enum):
    """Operations gated by the policy"""
    RESOLVE_ACCOUNT_OPEN = "resolve_account_open"
    RESOLVE_ACCOUNT_DELETION = "resolve_account_deletion"
    RESOLVE_PASSWORD_RESET = "resolve_password_reset"
    DELETE_ACCOUNT = "delete_account"
    EDIT_ROLE = "edit_role"
    CREATE_IDENTITY = "create_identity"
    UNLOCK_IDENTITY = "unlock_identity"
    POST_TRANSACTION = "post_transaction"
    SEARCH_IDENTITIES = "search_identities"
    VIEW_REQUESTS = "view_requests"
    VIEW_ALL_ACCOUNTS = "view_all_accounts"


EMPLOYEES: FrozenSet[Role] = frozenset({Role.TELLER, Role.ADMIN})
ADMINS: FrozenSet[Role] = frozenset({Role.ADMIN})

# Operations whose decision depends only on the actor's role
PERMISSIONS: Dict[Operation, FrozenSet[Role]] = {
    Operation.RESOLVE_ACCOUNT_OPEN: EMPLOYEES,
    Operation.RESOLVE_ACCOUNT_DELETION: ADMINS,
    Operation.RESOLVE_PASSWORD_RESET: ADMINS,
    Operation.DELETE_ACCOUNT: ADMINS,
    Operation.UNLOCK_IDENTITY: ADMINS,
    Operation.POST_TRANSACTION: EMPLOYEES,
    Operation.VIEW_REQUESTS: EMPLOYEES,
    Operation.VIEW_ALL_ACCOUNTS: EMPLOYEES,
}


def allow(
    actor_role: Optional[Role],
    operation: Operation,
    target_role: Optional[Role] = None,
    new_role: Optional[Role] = None
) -> bool:
    """
    Decide whether an actor may perform an operation

    Args:
        actor_role: Role of the caller, None when unauthenticated
        operation: Operation being attempted
        target_role: Current role of the identity acted upon. For
            CREATE_IDENTITY this is the role being created; for
            SEARCH_IDENTITIES it is the role filter (None means all roles).
        new_role: Role being assigned (EDIT_ROLE only)

    Returns:
        True when the table permits the operation
    """
    if operation == Operation.CREATE_IDENTITY:
        if target_role == Role.CUSTOMER:
            return actor_role is None or actor_role in EMPLOYEES
        return actor_role == Role.ADMIN

    if operation == Operation.EDIT_ROLE:
        if actor_role != Role.ADMIN:
            return False
        # Customer is terminal in both directions
        return Role.CUSTOMER not in (target_role, new_role)

    if operation == Operation.SEARCH_IDENTITIES:
        if actor_role == Role.ADMIN:
            return True
        return actor_role == Role.TELLER and target_role == Role.CUSTOMER

    return actor_role in PERMISSIONS.get(operation, frozenset())


def require(
    actor_role: Optional[Role],
    operation: Operation,
    target_role: Optional[Role] = None,
    new_role: Optional[Role] = None
) -> None:
    """Raise ForbiddenError unless allow() permits the operation"""
    if not allow(actor_role, operation, target_role, new_role):
        actor = actor_role.value if actor_role else "anonymous"
        raise ForbiddenError(f"Role {actor} may not perform {operation.value}")
