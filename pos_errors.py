"""Exceptions shared by the POS service layer and the HTTP server."""
from typing import Any, Dict, List, Optional


class PosError(Exception):
    """Base exception for all POS errors."""

    code = 'INTERNAL_SERVER_ERROR'
    http_status = 500

    def payload(self) -> Dict[str, Any]:
        return {'status': 'error', 'code': self.code, 'message': str(self)}


class ValidationError(PosError):
    """Raised when request input is malformed or out of range."""

    code = 'VALIDATION_ERROR'
    http_status = 400

    def __init__(self, errors: List[Dict[str, str]]):
        self.errors = list(errors)
        first = self.errors[0]['message'] if self.errors else 'Invalid input'
        super().__init__(first)

    @classmethod
    def single(cls, field: str, message: str) -> 'ValidationError':
        return cls([{'field': field, 'message': message}])

    def payload(self) -> Dict[str, Any]:
        data = super().payload()
        data['errors'] = self.errors
        return data


class UnauthorizedError(PosError):
    code = 'UNAUTHORIZED'
    http_status = 401


class NotFoundError(PosError):
    """Raised when a referenced category, product or order does not exist."""

    code = 'NOT_FOUND'
    http_status = 404

    def __init__(self, kind: str, ids: Any):
        self.kind = kind
        self.ids = [ids] if isinstance(ids, str) else list(ids)
        super().__init__(f"{kind} not found: {', '.join(self.ids)}")

    def payload(self) -> Dict[str, Any]:
        data = super().payload()
        data['resource'] = self.kind
        data['ids'] = self.ids
        return data


class ConflictError(PosError):
    """Raised on uniqueness violations or deletes blocked by references."""

    code = 'CONFLICT'
    http_status = 409


class PersistenceError(PosError):
    """Raised when a database write failed and was rolled back."""

    code = 'PERSISTENCE_ERROR'
    http_status = 500


class InternalInconsistencyError(PosError):
    code = 'INTERNAL_INCONSISTENCY'
    http_status = 500


class PaymentInitiationError(PosError):
    """Base for gateway failures that happen after the order is committed.

    ``order_id`` is filled in by the checkout flow so callers can offer
    "retry payment for order X" instead of a fresh checkout.
    """

    retryable = False

    def __init__(self, message: str, order_id: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.order_id = order_id
        self.status_code = status_code

    def payload(self) -> Dict[str, Any]:
        data = super().payload()
        data['orderId'] = self.order_id
        data['retryable'] = self.retryable
        return data


class GatewayUnavailable(PaymentInitiationError):
    code = 'GATEWAY_UNAVAILABLE'
    http_status = 502
    retryable = True


class GatewayTimeout(PaymentInitiationError):
    code = 'GATEWAY_TIMEOUT'
    http_status = 504
    retryable = True


class GatewayRejected(PaymentInitiationError):
    code = 'GATEWAY_REJECTED'
    http_status = 502
    retryable = False


class ReconciliationError(PosError):
    """The gateway accepted a payment request but the write-back failed.

    Money side and ledger side are out of sync until an operator links them.
    """

    code = 'RECONCILIATION_ERROR'
    http_status = 500

    def __init__(self, message: str, order_id: str, external_id: Optional[str], payment_method_id: Optional[str]):
        super().__init__(message)
        self.order_id = order_id
        self.external_id = external_id
        self.payment_method_id = payment_method_id

    def payload(self) -> Dict[str, Any]:
        data = super().payload()
        data['orderId'] = self.order_id
        data['externalTransactionId'] = self.external_id
        data['paymentMethodId'] = self.payment_method_id
        return data


class UploadAuthorizationError(PosError):
    """Raised when object storage refuses to sign an upload URL."""

    code = 'INTERNAL_SERVER_ERROR'
    http_status = 500
