"""
FastAPI REST API Module

Thin HTTP boundary over a BackOffice context: resolves the caller from the
bearer token, invokes one core operation and translates error kinds into
status codes. No business rules live here.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
import uvicorn

from .config import BackOfficeConfig, get_config
from .context import BackOffice
from .errors import BackOfficeError, ForbiddenError, TokenError
from .ledger import LedgerEntry
from .identity import parse_role
from .policy import Operation, Role, allow, require
from .tokens import TokenClaims
from .workflows import Request as WorkflowRequest
from .logging_config import get_logger, log_action, setup_logging


logger = get_logger(__name__)

ERROR_STATUS: Dict[str, int] = {
    "validation": status.HTTP_400_BAD_REQUEST,
    "unauthenticated": status.HTTP_401_UNAUTHORIZED,
    "expired": status.HTTP_401_UNAUTHORIZED,
    "unauthorized": status.HTTP_401_UNAUTHORIZED,
    "forbidden": status.HTTP_403_FORBIDDEN,
    "not_found": status.HTTP_404_NOT_FOUND,
    "conflict": status.HTTP_409_CONFLICT,
    "locked": status.HTTP_423_LOCKED,
}

security = HTTPBearer(auto_error=False)


# Pydantic models for API requests
class LoginRequest(BaseModel):
    username: str
    password: str


class PasswordResetRequest(BaseModel):
    username: str


class ChangePasswordRequest(BaseModel):
    old_password: str
    new_password: str


class RegisterCustomerRequest(BaseModel):
    username: str
    password: str
    first_name: str = ""
    last_name: str = ""


class CreateEmployeeRequest(BaseModel):
    username: str
    password: str
    role: str = Field(..., description="teller or admin")
    first_name: str = ""
    last_name: str = ""


class ChangeRoleRequest(BaseModel):
    role: str


class PostTransactionRequest(BaseModel):
    type: str = Field(..., description="deposit, withdrawal, payment, credit or debit")
    amount: str = Field(..., description="Decimal amount as string")
    description: str = ""


class SubmitRequest(BaseModel):
    kind: str = Field(..., description="account_open, account_deletion or password_reset")
    requester_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class ResolveRequest(BaseModel):
    decision: str = Field(..., description="approve or reject")


def _entry_to_dict(entry: LedgerEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "account_id": entry.account_id,
        "amount": str(entry.amount),
        "direction": entry.direction.value,
        "description": entry.description,
        "created_at": entry.created_at.isoformat(),
    }


def _request_to_dict(request: WorkflowRequest) -> Dict[str, Any]:
    return request.to_dict()


def get_office(request: Request) -> BackOffice:
    return request.app.state.office


def get_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    office: BackOffice = Depends(get_office)
) -> TokenClaims:
    """Dependency that verifies the bearer token and returns the caller with its current role"""
    if not credentials:
        raise TokenError("Not authenticated")
    return office.resolve_caller(credentials.credentials)


def get_optional_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    office: BackOffice = Depends(get_office)
) -> Optional[TokenClaims]:
    """Like get_caller, but anonymous callers get None"""
    if not credentials:
        return None
    return office.resolve_caller(credentials.credentials)


def _require_owner_or_employee(caller: TokenClaims, owner_id: str) -> None:
    if caller.identity_id != owner_id and not allow(caller.role, Operation.VIEW_ALL_ACCOUNTS):
        raise ForbiddenError("You may only view your own accounts")


def create_app(office: BackOffice) -> FastAPI:
    """Create and configure the FastAPI application around a BackOffice"""
    app = FastAPI(
        title="Back Office API",
        description="Account ledger and approval workflow back office",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.office = office

    @app.exception_handler(BackOfficeError)
    async def back_office_error_handler(request: Request, exc: BackOfficeError):
        body: Dict[str, Any] = {"detail": exc.message, "error": exc.kind}
        if getattr(exc, "attempts_remaining", None) is not None:
            body["attempts_remaining"] = exc.attempts_remaining
        if getattr(exc, "locked_until", None) is not None:
            body["locked_until"] = exc.locked_until.isoformat()
        log_action(logger, "warning", f"{request.method} {request.url.path} failed: {exc.message}",
                   action=exc.kind, resource=request.url.path)
        return JSONResponse(status_code=ERROR_STATUS.get(exc.kind, 500), content=body)

    # Authentication

    @app.post("/api/auth/login", tags=["Auth"])
    def login(body: LoginRequest, office: BackOffice = Depends(get_office)):
        """Authenticate and return a bearer token"""
        result, token = office.login(body.username, body.password)
        return {
            "access_token": token,
            "token_type": "bearer",
            "identity_id": result.identity.id,
            "role": result.identity.role.value,
            "force_password_change": result.force_password_change,
        }

    @app.post("/api/auth/password-reset/request", status_code=status.HTTP_202_ACCEPTED,
              tags=["Auth"])
    def request_password_reset(body: PasswordResetRequest,
                               office: BackOffice = Depends(get_office)):
        """Forgot-password entry point; an admin must approve the request"""
        request = office.workflows.request_password_reset(body.username)
        return {
            "request_id": request.id,
            "status": request.status.value,
            "message": "Password reset requested. Your new password will be provided by the bank.",
        }

    @app.post("/api/auth/change-password", tags=["Auth"])
    def change_password(body: ChangePasswordRequest,
                        caller: TokenClaims = Depends(get_caller),
                        office: BackOffice = Depends(get_office)):
        office.login_guard.change_password(caller.identity_id, body.old_password, body.new_password)
        return {"message": "Password changed"}

    # Customers

    @app.post("/api/customers", status_code=status.HTTP_201_CREATED, tags=["Customers"])
    def register_customer(body: RegisterCustomerRequest,
                          caller: Optional[TokenClaims] = Depends(get_optional_caller),
                          office: BackOffice = Depends(get_office)):
        """Self-service registration, or onboarding by a teller or admin"""
        identity, checking = office.onboard_customer(
            body.username, body.password,
            first_name=body.first_name,
            last_name=body.last_name,
            actor_role=caller.role if caller else None,
            actor=caller.username if caller else body.username
        )
        return {"customer": identity.to_public_dict(), "checking_account": checking.to_public_dict()}

    @app.get("/api/customers/{customer_id}/accounts", tags=["Customers"])
    def list_customer_accounts(customer_id: str,
                               caller: TokenClaims = Depends(get_caller),
                               office: BackOffice = Depends(get_office)):
        _require_owner_or_employee(caller, customer_id)
        office.identities.find_by_id(customer_id)
        return [a.to_public_dict() for a in office.accounts.find_by_owner(customer_id)]

    # Accounts

    @app.get("/api/accounts/search", tags=["Accounts"])
    def search_accounts(account_number: Optional[str] = None,
                        account_type: Optional[str] = None,
                        owner_id: Optional[str] = None,
                        caller: TokenClaims = Depends(get_caller),
                        office: BackOffice = Depends(get_office)):
        require(caller.role, Operation.VIEW_ALL_ACCOUNTS)
        accounts = office.accounts.search(account_number, account_type, owner_id)
        return [a.to_public_dict() for a in accounts]

    @app.get("/api/accounts/{account_id}", tags=["Accounts"])
    def get_account(account_id: str,
                    caller: TokenClaims = Depends(get_caller),
                    office: BackOffice = Depends(get_office)):
        account = office.accounts.find_by_id(account_id)
        _require_owner_or_employee(caller, account.owner_id)
        return account.to_public_dict()

    @app.delete("/api/accounts/{account_number}", tags=["Accounts"])
    def delete_account(account_number: str,
                       caller: TokenClaims = Depends(get_caller),
                       office: BackOffice = Depends(get_office)):
        office.accounts.close_account(account_number, caller.role, actor=caller.username)
        return {"message": f"Account {account_number} deleted"}

    @app.get("/api/accounts/{account_id}/transactions", tags=["Transactions"])
    def list_transactions(account_id: str,
                          type: Optional[str] = None,
                          amount: Optional[str] = None,
                          caller: TokenClaims = Depends(get_caller),
                          office: BackOffice = Depends(get_office)):
        account = office.accounts.find_by_id(account_id)
        _require_owner_or_employee(caller, account.owner_id)
        entries = office.ledger.search(account_id, direction=type, amount=amount)
        return [_entry_to_dict(e) for e in entries]

    @app.post("/api/accounts/{account_id}/transactions", status_code=status.HTTP_201_CREATED,
              tags=["Transactions"])
    def post_transaction(account_id: str, body: PostTransactionRequest,
                         caller: TokenClaims = Depends(get_caller),
                         office: BackOffice = Depends(get_office)):
        entry = office.post_transaction(
            account_id, body.type, body.amount, body.description,
            actor_role=caller.role, actor=caller.username
        )
        return {
            "transaction": _entry_to_dict(entry),
            "balance": str(office.ledger.balance_of(account_id)),
        }

    # Requests

    @app.post("/api/requests", status_code=status.HTTP_201_CREATED, tags=["Requests"])
    def submit_request(body: SubmitRequest,
                       caller: TokenClaims = Depends(get_caller),
                       office: BackOffice = Depends(get_office)):
        """Customers submit for themselves; employees may submit on a customer's behalf"""
        requester_id = body.requester_id or caller.identity_id
        _require_owner_or_employee(caller, requester_id)
        request = office.workflows.submit(body.kind, requester_id, body.payload,
                                          actor=caller.username)
        return _request_to_dict(request)

    @app.get("/api/requests", tags=["Requests"])
    def list_requests(kind: Optional[str] = None,
                      status: Optional[str] = None,
                      caller: TokenClaims = Depends(get_caller),
                      office: BackOffice = Depends(get_office)):
        """Employees see every request; customers see their own"""
        requester_id = None
        if not allow(caller.role, Operation.VIEW_REQUESTS):
            requester_id = caller.identity_id
        requests = office.workflows.list_requests(requester_id, kind, status)
        return [_request_to_dict(r) for r in requests]

    @app.get("/api/requests/pending", tags=["Requests"])
    def list_pending(kind: Optional[str] = None,
                     caller: TokenClaims = Depends(get_caller),
                     office: BackOffice = Depends(get_office)):
        require(caller.role, Operation.VIEW_REQUESTS)
        return [_request_to_dict(r) for r in office.workflows.list_pending(kind)]

    @app.post("/api/requests/{request_id}/resolve", tags=["Requests"])
    def resolve_request(request_id: str, body: ResolveRequest,
                        caller: TokenClaims = Depends(get_caller),
                        office: BackOffice = Depends(get_office)):
        resolution = office.workflows.resolve(
            request_id, body.decision, caller.role, actor_id=caller.identity_id
        )
        result: Dict[str, Any] = {"request": _request_to_dict(resolution.request)}
        if resolution.account is not None:
            result["account"] = resolution.account.to_public_dict()
        if resolution.temporary_password is not None:
            result["temporary_password"] = resolution.temporary_password
        return result

    # Users

    @app.post("/api/users", status_code=status.HTTP_201_CREATED, tags=["Users"])
    def create_employee(body: CreateEmployeeRequest,
                        caller: TokenClaims = Depends(get_caller),
                        office: BackOffice = Depends(get_office)):
        identity = office.create_employee(
            body.username, body.password, parse_role(body.role), caller.role,
            first_name=body.first_name, last_name=body.last_name, actor=caller.username
        )
        return identity.to_public_dict()

    @app.get("/api/users/search", tags=["Users"])
    def search_users(username: Optional[str] = None,
                     role: Optional[str] = None,
                     caller: TokenClaims = Depends(get_caller),
                     office: BackOffice = Depends(get_office)):
        """Admins search everyone; tellers search customers only"""
        role_filter = parse_role(role) if role else None
        if caller.role == Role.TELLER and role_filter is None:
            role_filter = Role.CUSTOMER
        require(caller.role, Operation.SEARCH_IDENTITIES, target_role=role_filter)
        return [i.to_public_dict() for i in office.identities.search(username, role_filter)]

    @app.put("/api/users/{identity_id}/role", tags=["Users"])
    def change_role(identity_id: str, body: ChangeRoleRequest,
                    caller: TokenClaims = Depends(get_caller),
                    office: BackOffice = Depends(get_office)):
        identity = office.identities.set_role(
            identity_id, parse_role(body.role), caller.role, actor=caller.username
        )
        return identity.to_public_dict()

    @app.post("/api/users/{identity_id}/unlock", tags=["Users"])
    def unlock_user(identity_id: str,
                    caller: TokenClaims = Depends(get_caller),
                    office: BackOffice = Depends(get_office)):
        office.login_guard.unlock(identity_id, caller.role, actor=caller.username)
        return {"message": "User unlocked"}

    # Health

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "timestamp": datetime.now().isoformat()}

    return app


def run_server(config: Optional[BackOfficeConfig] = None):
    """Build the back office from config and serve it"""
    config = config or get_config()
    setup_logging(config.log_level, config.log_format, config.log_file)
    office = BackOffice.from_config(config)
    uvicorn.run(create_app(office), host=config.api_host, port=config.api_port,
                log_level=config.log_level.lower())
