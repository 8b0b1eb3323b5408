"""
Error types shared by the order workflow, settlement and payment modules.

Each error carries the HTTP status it maps to and a machine-readable code,
so routes can render them uniformly as {"error": ..., "code": ...}.
"""


class MarketplaceError(Exception):
    """Base class for errors raised by the marketplace services"""
    status_code = 500
    default_code = 'INTERNAL_ERROR'

    def __init__(self, message, error_code=None, details=None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details

    def to_dict(self):
        payload = {'error': self.message, 'code': self.error_code}
        if self.details:
            payload['details'] = self.details
        return payload


class ValidationError(MarketplaceError):
    """Malformed or missing input"""
    status_code = 400
    default_code = 'VALIDATION_ERROR'


class NotFoundError(MarketplaceError):
    """Referenced entity does not exist"""
    status_code = 404
    default_code = 'NOT_FOUND'


class ConflictError(MarketplaceError):
    """Request conflicts with the current state (already paid, terminal job, ...)"""
    status_code = 409
    default_code = 'CONFLICT'


class UpstreamGatewayError(MarketplaceError):
    """Payment provider unreachable, misconfigured or rejected the request"""
    status_code = 500
    default_code = 'GATEWAY_ERROR'


class InternalError(MarketplaceError):
    """Unexpected store failure"""
    status_code = 500
    default_code = 'INTERNAL_ERROR'
