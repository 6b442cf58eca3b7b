"""
Error Handling Module for School Ledger

This module provides centralized error handling with:
- Custom exception hierarchy (validation, policy, conflict, infrastructure)
- Standardized error responses
- Error logging
- Database error handling
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union
from uuid import UUID
import logging

from fastapi import FastAPI, Request, HTTPException, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import (
    SQLAlchemyError,
    IntegrityError,
    OperationalError,
    DataError,
)
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.utils.money import format_cents

# Configure logging
logger = logging.getLogger("school_ledger.errors")


class ErrorCode(str, Enum):
    """Standardized error codes for the application"""
    
    # Validation Errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_DATE_RANGE = "INVALID_DATE_RANGE"
    UNBALANCED_ENTRY = "UNBALANCED_ENTRY"
    UNKNOWN_ACCOUNT = "UNKNOWN_ACCOUNT"
    INVALID_LINE = "INVALID_LINE"
    
    # Authorization Errors (403)
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
    
    # Resource Errors (404/409)
    NOT_FOUND = "NOT_FOUND"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    ENTRY_NOT_FOUND = "ENTRY_NOT_FOUND"
    PERIOD_NOT_FOUND = "PERIOD_NOT_FOUND"
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"
    PERIOD_OVERLAP = "PERIOD_OVERLAP"
    
    # Business Logic Errors (422)
    BUSINESS_RULE_VIOLATION = "BUSINESS_RULE_VIOLATION"
    PERIOD_CLOSED = "PERIOD_CLOSED"
    NO_PERIOD = "NO_PERIOD"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
    BUDGET_CHECK_FAILED = "BUDGET_CHECK_FAILED"
    APPROVAL_DENIED = "APPROVAL_DENIED"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    CANNOT_MODIFY = "CANNOT_MODIFY"
    CANNOT_DELETE = "CANNOT_DELETE"
    IMMUTABLE_RECORD = "IMMUTABLE_RECORD"
    
    # Database Errors (500)
    DATABASE_ERROR = "DATABASE_ERROR"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    DATA_INTEGRITY_ERROR = "DATA_INTEGRITY_ERROR"
    
    # Internal Errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppException(Exception):
    """Base exception for all application exceptions"""
    
    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.field = field
        self.original_error = original_error
        self.timestamp = datetime.utcnow()
        super().__init__(self.message)
    
    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response"""
        result = {
            "code": self.code.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat() + "Z",
        }
        if self.field:
            result["field"] = self.field
        if self.details:
            result["details"] = self.details
        return result


# ============================================================================
# Validation Exceptions
# ============================================================================

class ValidationException(AppException):
    """Base validation exception"""
    
    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
            field=field,
        )


class UnbalancedEntryException(ValidationException):
    """Debits and credits of a journal entry differ"""
    
    def __init__(self, total_debit: int, total_credit: int):
        super().__init__(
            message=(
                f"Debits ({format_cents(total_debit)}) must equal credits "
                f"({format_cents(total_credit)})"
            ),
            field="lines",
            code=ErrorCode.UNBALANCED_ENTRY,
            details={
                "total_debit": total_debit,
                "total_credit": total_credit,
                "difference": total_debit - total_credit,
            },
        )


class UnknownAccountException(ValidationException):
    """Line references an account that does not exist or is inactive"""
    
    def __init__(self, account_code: str, inactive: bool = False):
        reason = "is inactive" if inactive else "does not exist"
        super().__init__(
            message=f"Account {account_code} {reason}",
            field="account_code",
            code=ErrorCode.UNKNOWN_ACCOUNT,
            details={"account_code": account_code, "inactive": inactive},
        )


class InvalidLineException(ValidationException):
    """Malformed journal entry line"""
    
    def __init__(self, message: str, line_number: Optional[int] = None):
        super().__init__(
            message=message,
            field="lines",
            code=ErrorCode.INVALID_LINE,
            details={"line_number": line_number} if line_number is not None else None,
        )


# ============================================================================
# Authorization Exceptions
# ============================================================================

class AuthorizationException(AppException):
    """Authorization denied exception"""
    
    def __init__(
        self,
        message: str = "Permission denied",
        required_role: Optional[str] = None,
        code: ErrorCode = ErrorCode.FORBIDDEN,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        if required_role:
            _details["required_role"] = required_role
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            details=_details,
        )


class InsufficientPermissionsException(AuthorizationException):
    """Actor role does not match the role a workflow step requires"""
    
    def __init__(self, required_role: str, actor_role: Optional[str] = None):
        details = {"current_role": actor_role} if actor_role else None
        super().__init__(
            message=f"Insufficient permissions. Required role: {required_role}",
            required_role=required_role,
            code=ErrorCode.INSUFFICIENT_PERMISSIONS,
            details=details,
        )


# ============================================================================
# Resource Exceptions
# ============================================================================

class NotFoundException(AppException):
    """Resource not found exception"""
    
    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[Union[str, UUID]] = None,
        message: Optional[str] = None,
        code: ErrorCode = ErrorCode.NOT_FOUND,
    ):
        if message is None:
            if resource_id:
                message = f"{resource_type} with ID '{resource_id}' not found"
            else:
                message = f"{resource_type} not found"
        
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": str(resource_id) if resource_id else None},
        )


class ConflictException(AppException):
    """Resource conflict exception"""
    
    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        code: ErrorCode = ErrorCode.RESOURCE_CONFLICT,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        if resource_type:
            _details["resource_type"] = resource_type
        
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=_details,
        )


class DuplicateEntryException(ConflictException):
    """
    A record with the same idempotency key (or other unique value) already
    exists. Callers treat this as "already processed", not as a failure.
    """
    
    def __init__(
        self,
        resource_type: str,
        field: str,
        value: str,
        existing_id: Optional[Union[str, UUID]] = None,
    ):
        self.existing_id = existing_id
        super().__init__(
            message=f"{resource_type} with {field} '{value}' already exists",
            resource_type=resource_type,
            code=ErrorCode.DUPLICATE_ENTRY,
            details={
                "field": field,
                "value": value,
                "existing_id": str(existing_id) if existing_id else None,
            },
        )


# ============================================================================
# Business Logic Exceptions
# ============================================================================

class BusinessRuleException(AppException):
    """Business rule violation exception"""
    
    def __init__(
        self,
        message: str,
        rule: Optional[str] = None,
        code: ErrorCode = ErrorCode.BUSINESS_RULE_VIOLATION,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        if rule:
            _details["violated_rule"] = rule
        
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=_details,
        )


class PeriodClosedException(BusinessRuleException):
    """Write refused by the period gate"""
    
    def __init__(self, message: str, period_name: Optional[str] = None, period_status: Optional[str] = None):
        super().__init__(
            message=message,
            rule="PERIOD_OPEN",
            code=ErrorCode.PERIOD_CLOSED if period_name else ErrorCode.NO_PERIOD,
            details={"period": period_name, "status": period_status},
        )


class BudgetExceededException(BusinessRuleException):
    """Budget exceeded exception"""
    
    def __init__(self, account_code: str, allocated: int, spent: int, requested: int, message: Optional[str] = None):
        overrun = spent + requested - allocated
        super().__init__(
            message=message or (
                f"Budget for account {account_code} would be exceeded by {format_cents(overrun)}"
            ),
            rule="BUDGET_LIMIT",
            code=ErrorCode.BUDGET_EXCEEDED,
            details={
                "account_code": account_code,
                "allocated_amount": allocated,
                "spent_amount": spent,
                "requested_amount": requested,
                "overrun_amount": overrun,
            },
        )


class ApprovalDeniedException(BusinessRuleException):
    """Approval denied exception"""
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            rule="APPROVAL_SEGREGATION",
            code=ErrorCode.APPROVAL_DENIED,
            details=details,
        )


class InvalidStateTransitionException(BusinessRuleException):
    """A state machine refused a transition"""
    
    def __init__(self, resource_type: str, current_status: str, action: str, message: Optional[str] = None):
        super().__init__(
            message=message or f"Cannot {action} {resource_type} in status {current_status}",
            rule="STATE_MACHINE",
            code=ErrorCode.INVALID_STATE_TRANSITION,
            details={"resource_type": resource_type, "current_status": current_status, "action": action},
        )


class ImmutableRecordException(BusinessRuleException):
    """Attempt to change a record the ledger keeps immutable"""
    
    def __init__(self, resource_type: str, message: Optional[str] = None):
        super().__init__(
            message=message or f"{resource_type} records cannot be modified or deleted",
            rule="IMMUTABLE_RECORD",
            code=ErrorCode.IMMUTABLE_RECORD,
            details={"resource_type": resource_type},
        )


# ============================================================================
# Exception Handlers
# ============================================================================

def create_error_response(
    code: ErrorCode,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
    field: Optional[str] = None,
) -> JSONResponse:
    """Create a standardized error response"""
    content = {
        "detail": {
            "code": code.value,
            "message": message,
            "timestamp": datetime.utcnow().isoformat() + "Z",
        }
    }
    
    if field:
        content["detail"]["field"] = field
    
    if details:
        content["detail"]["details"] = details
    
    return JSONResponse(status_code=status_code, content=content)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handle AppException"""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"AppException: {exc.code.value} - {exc.message}",
        extra={
            "code": exc.code.value,
            "path": request.url.path,
            "method": request.method,
        },
        exc_info=exc.original_error,
    )
    
    return create_error_response(
        code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        field=exc.field,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTPException"""
    code_map = {
        400: ErrorCode.INVALID_INPUT,
        401: ErrorCode.UNAUTHORIZED,
        403: ErrorCode.FORBIDDEN,
        404: ErrorCode.NOT_FOUND,
        409: ErrorCode.RESOURCE_CONFLICT,
        422: ErrorCode.VALIDATION_ERROR,
        500: ErrorCode.INTERNAL_ERROR,
    }
    
    error_code = code_map.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    
    logger.warning(
        f"HTTPException: {exc.status_code} - {message}",
        extra={"path": request.url.path, "method": request.method},
    )
    
    return create_error_response(
        code=error_code,
        message=message,
        status_code=exc.status_code,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle Pydantic validation errors"""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
        })
    
    logger.warning(
        f"ValidationError: {len(errors)} validation errors",
        extra={"path": request.url.path, "method": request.method},
    )
    
    return create_error_response(
        code=ErrorCode.VALIDATION_ERROR,
        message="Request validation failed",
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        details={"errors": errors},
    )


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Handle SQLAlchemy errors"""
    error_message = "A database error occurred"
    error_code = ErrorCode.DATABASE_ERROR
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    
    if isinstance(exc, IntegrityError):
        error_message = "Data integrity constraint violated"
        error_code = ErrorCode.DATA_INTEGRITY_ERROR
        
        error_str = str(exc.orig).lower() if exc.orig else ""
        if "unique" in error_str or "duplicate" in error_str:
            error_message = "A record with this value already exists"
            error_code = ErrorCode.DUPLICATE_ENTRY
            status_code = status.HTTP_409_CONFLICT
        elif "foreign key" in error_str:
            error_message = "Referenced record does not exist"
            status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, OperationalError):
        error_message = "Database operation failed"
        error_code = ErrorCode.CONNECTION_ERROR
    elif isinstance(exc, DataError):
        error_message = "Invalid data format for database"
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    
    logger.error(
        f"SQLAlchemyError: {type(exc).__name__} - {str(exc)}",
        extra={"path": request.url.path, "method": request.method},
        exc_info=True,
    )
    
    return create_error_response(
        code=error_code,
        message=error_message,
        status_code=status_code,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions"""
    logger.critical(
        f"UnhandledException: {type(exc).__name__} - {str(exc)}",
        extra={"path": request.url.path, "method": request.method},
        exc_info=True,
    )
    
    return create_error_response(
        code=ErrorCode.INTERNAL_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
