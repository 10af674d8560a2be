"""Response envelopes shared by the API views."""

from rest_framework import status
from rest_framework.response import Response

from .errors import ErrorCode, OpsError


def error_response(exc: OpsError) -> Response:
    """Render a service error in the standard failure envelope."""
    return Response(exc.to_dict(), status=exc.http_status)


def invalid_input_response(errors, message: str = 'Invalid input data.') -> Response:
    """Render serializer errors in the standard failure envelope."""
    return Response(
        {
            'success': False,
            'error_code': ErrorCode.ERR_VALIDATION.value,
            'errors': errors,
            'message': message
        },
        status=status.HTTP_400_BAD_REQUEST
    )
