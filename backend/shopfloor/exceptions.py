"""
Shopfloor MES - Custom Exception Hierarchy

Provides structured, typed exceptions with error codes for consistent
error handling across the execution core. The transport layer in front of
the core maps ``status_code`` and ``to_dict()`` onto its own responses.

Usage:
    from shopfloor.exceptions import NotFoundError, InsufficientStockError

    raise NotFoundError("Work order", work_order_id)
    raise InsufficientStockError(product_id, requested=qty, available=atp)
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional


def _fmt(value: Any) -> str:
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    return str(value)


class ShopfloorException(Exception):
    """
    Base exception for all shopfloor errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., "NOT_FOUND", "VALIDATION_ERROR")
        status_code: HTTP status code suggested to the calling layer
        details: Additional context for debugging
    """

    error_code: str = "SHOPFLOOR_ERROR"
    status_code: int = 500

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API response."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# ===================
# 400 Bad Request Errors
# ===================


class ValidationError(ShopfloorException):
    """Raised when input validation fails."""

    error_code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(
        self,
        message: str = "Validation failed",
        *,
        field: Optional[str] = None,
        value: Any = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = _fmt(value)
        super().__init__(message, details=details)


class InvalidIntervalError(ValidationError):
    """Raised when a scheduling window is empty or inverted."""

    error_code = "INVALID_INTERVAL"

    def __init__(self, start: Any, end: Any):
        super().__init__(
            f"Invalid interval: end ({end}) must be after start ({start})",
            field="end",
            details={"start": str(start), "end": str(end)},
        )


class IllegalTransitionError(ShopfloorException):
    """Raised when an operation is invalid for the current work order state."""

    error_code = "ILLEGAL_TRANSITION"
    status_code = 400

    def __init__(
        self,
        message: str = "Operation not allowed in current state",
        *,
        current_state: Optional[str] = None,
        target_state: Optional[str] = None,
        allowed_states: Optional[list] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        if current_state:
            details["current_state"] = current_state
        if target_state:
            details["target_state"] = target_state
        if allowed_states is not None:
            details["allowed_states"] = allowed_states
        super().__init__(message, details=details)


# ===================
# 404 Not Found Errors
# ===================


class NotFoundError(ShopfloorException):
    """Raised when a resource is not found."""

    error_code = "NOT_FOUND"
    status_code = 404

    def __init__(
        self,
        resource: str = "Resource",
        resource_id: Any = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        details["resource"] = resource
        if resource_id is not None:
            details["resource_id"] = str(resource_id)
        message = f"{resource} not found"
        if resource_id is not None:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(message, details=details)


# ===================
# 409 Conflict Errors
# ===================


class SchedulingConflictError(ShopfloorException):
    """Raised when a machine window overlaps an existing allocation."""

    error_code = "SCHEDULING_CONFLICT"
    status_code = 409

    def __init__(
        self,
        machine_id: int,
        conflicting_work_order_id: int,
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.machine_id = machine_id
        self.conflicting_work_order_id = conflicting_work_order_id
        details = details or {}
        details["machine_id"] = machine_id
        details["conflicting_work_order_id"] = conflicting_work_order_id
        super().__init__(
            f"Machine {machine_id} is already allocated to work order "
            f"{conflicting_work_order_id} in the requested window",
            details=details,
        )


# ===================
# 422 Unprocessable Entity Errors
# ===================


class BusinessRuleError(ShopfloorException):
    """Raised when a business rule refuses an otherwise valid request."""

    error_code = "BUSINESS_RULE_ERROR"
    status_code = 422

    def __init__(
        self,
        message: str = "Business rule violation",
        *,
        rule: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        if rule:
            details["rule"] = rule
        super().__init__(message, details=details)


class InsufficientStockError(BusinessRuleError):
    """Raised when a product's stock cannot cover an allocation or consumption."""

    error_code = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        product_id: int,
        *,
        requested: Decimal,
        available: Decimal,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        details = details or {}
        details["product_id"] = product_id
        details["requested"] = _fmt(requested)
        details["available"] = _fmt(available)
        message = (
            f"Insufficient stock for product {product_id}: "
            f"requested {_fmt(requested)}, available {_fmt(available)}"
        )
        super().__init__(message, details=details)


class MaterialShortageError(BusinessRuleError):
    """Raised when a work order cannot be scheduled because components are short."""

    error_code = "MATERIAL_SHORTAGE"

    def __init__(self, shortages: List[Any], *, details: Optional[Dict[str, Any]] = None):
        self.shortages = shortages
        details = details or {}
        details["shortages"] = [
            {
                "component_product_id": s.component_product_id,
                "shortage": _fmt(s.shortage),
            }
            for s in shortages
        ]
        super().__init__(
            f"Material shortage for {len(shortages)} component(s)", details=details
        )


class OverProductionError(BusinessRuleError):
    """Raised when recorded output would exceed the planned quantity plus tolerance."""

    error_code = "OVER_PRODUCTION"

    def __init__(
        self,
        *,
        planned: Decimal,
        tolerance: Decimal,
        attempted: Decimal,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        details["planned"] = _fmt(planned)
        details["tolerance"] = _fmt(tolerance)
        details["attempted"] = _fmt(attempted)
        super().__init__(
            f"Produced plus scrap ({_fmt(attempted)}) would exceed planned "
            f"{_fmt(planned)} + tolerance {_fmt(tolerance)}",
            details=details,
        )


class UnknownProductError(BusinessRuleError):
    """Raised when a product has no BOM and is not a stocked item."""

    error_code = "UNKNOWN_PRODUCT"

    def __init__(self, product_id: int, *, details: Optional[Dict[str, Any]] = None):
        self.product_id = product_id
        details = details or {}
        details["product_id"] = product_id
        super().__init__(
            f"Product {product_id} has no bill of materials and is not stocked",
            details=details,
        )


class CycleDetectedError(BusinessRuleError):
    """Raised when the BOM graph contains a cycle."""

    error_code = "BOM_CYCLE_DETECTED"

    def __init__(self, path: List[int], *, details: Optional[Dict[str, Any]] = None):
        self.path = list(path)
        details = details or {}
        details["path"] = self.path
        super().__init__(
            "BOM cycle detected: " + " -> ".join(str(p) for p in self.path),
            details=details,
        )


class MaxDepthExceededError(BusinessRuleError):
    """Raised when BOM explosion goes deeper than the configured limit."""

    error_code = "BOM_MAX_DEPTH_EXCEEDED"

    def __init__(
        self, max_depth: int, path: List[int], *, details: Optional[Dict[str, Any]] = None
    ):
        self.max_depth = max_depth
        self.path = list(path)
        details = details or {}
        details["max_depth"] = max_depth
        details["path"] = self.path
        super().__init__(
            f"BOM explosion exceeded maximum depth of {max_depth}", details=details
        )


# ===================
# 500 Internal Server Errors
# ===================


class InvariantViolationError(ShopfloorException):
    """Raised when stored state contradicts an invariant the core relies on."""

    error_code = "INVARIANT_VIOLATION"
    status_code = 500

    def __init__(
        self,
        message: str = "Invariant violated",
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details=details)
