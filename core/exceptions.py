"""
Error taxonomy shared by the order, pipeline and return services.

Every error carries an HTTP status and a public message that is safe to show
to end users or external parties. Raw storage errors are logged server-side
and never copied into ``public_message``.
"""
from rest_framework import status
from rest_framework.response import Response


class OrderFlowError(Exception):
    """Base class for typed order-flow failures."""
    status_code = status.HTTP_400_BAD_REQUEST
    error = 'Bad Request'
    default_message = 'The request could not be processed.'

    def __init__(self, message=None):
        self.public_message = message or self.default_message
        super().__init__(self.public_message)


class Unauthenticated(OrderFlowError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error = 'Unauthenticated'
    default_message = 'You must be logged in to perform this action.'


class Forbidden(OrderFlowError):
    status_code = status.HTTP_403_FORBIDDEN
    error = 'Forbidden'
    default_message = 'You do not have permission to perform this action.'


class NotFound(OrderFlowError):
    status_code = status.HTTP_404_NOT_FOUND
    error = 'Not Found'
    default_message = 'The requested record was not found.'


class InvalidSignature(OrderFlowError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = 'Invalid Signature'
    default_message = 'Webhook signature verification failed.'


class MalformedPayload(OrderFlowError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = 'Malformed Payload'
    default_message = 'Webhook payload is not valid JSON.'


class OrderValidationError(OrderFlowError):
    """Raised when order or return input fails validation."""
    status_code = status.HTTP_400_BAD_REQUEST
    error = 'Validation Error'


class OrderNotResolved(OrderFlowError):
    status_code = status.HTTP_404_NOT_FOUND
    error = 'Order Not Resolved'
    default_message = 'No order matches this event.'


class InvalidStateTransition(OrderFlowError):
    status_code = status.HTTP_409_CONFLICT
    error = 'Invalid State Transition'
    default_message = 'This change is not allowed from the current status.'


class PersistenceError(OrderFlowError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = 'Server Error'
    default_message = 'An unexpected error occurred. Please try again.'


def error_response(exc: OrderFlowError, status_code=None) -> Response:
    """Render a typed error as the API's ``{'error', 'detail'}`` body."""
    return Response(
        {'error': exc.error, 'detail': exc.public_message},
        status=status_code or exc.status_code
    )
