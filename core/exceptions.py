"""
Error kinds raised by the consultation core.

Every rejected operation raises a subclass of ConsultationError carrying a
human-readable ``message``, a stable machine ``code`` and optional ``details``.
The DRF exception handler at the bottom turns them into JSON responses.
"""

import logging
from contextlib import contextmanager

from django.db import DatabaseError, transaction
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


class ConsultationError(Exception):
    """Base class for every error raised by the consultation core."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = 'consultation_error'

    def __init__(self, message, code=None, details=None):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(ConsultationError):
    """Malformed input. Nothing was changed; retry with corrected input."""
    default_code = 'invalid'


class InvalidProposedTime(ValidationError):
    """A proposed meeting time is missing or not strictly in the future."""
    default_code = 'invalid_proposed_time'


class NotFound(ConsultationError):
    status_code = status.HTTP_404_NOT_FOUND
    default_code = 'not_found'


class NotRespondable(ConsultationError):
    """
    The record is not in a state that permits the requested transition.
    
    Losing a race (another consultant accepted first, the sweeper expired the
    invitation) ends here, so this is an expected outcome and not a fault.
    """
    status_code = status.HTTP_409_CONFLICT
    default_code = 'not_respondable'


class Forbidden(ConsultationError):
    """The actor is not a party to the request."""
    status_code = status.HTTP_403_FORBIDDEN
    default_code = 'forbidden'


class InsufficientBalance(ConsultationError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    default_code = 'insufficient_balance'


class NothingToRefund(ConsultationError):
    default_code = 'nothing_to_refund'


class DuplicateInvitation(ConsultationError):
    """A pending invitation already exists for this request and consultant."""
    status_code = status.HTTP_409_CONFLICT
    default_code = 'duplicate_invitation'


class StorageError(ConsultationError):
    """
    Unexpected database failure during an atomic mutation.
    
    The transaction was rolled back, so the caller may retry.
    """
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_code = 'storage_error'


@contextmanager
def atomic_operation(operation):
    """
    Run a block inside ``transaction.atomic()`` and report database failures
    as StorageError once the block has been rolled back.
    
    Args:
        operation: Short description used in the log line and error message
    """
    try:
        with transaction.atomic():
            yield
    except DatabaseError as exc:
        logger.error(f"Storage failure during {operation}: {exc}", exc_info=True)
        raise StorageError(
            f'Could not complete {operation}. Please try again.',
            details={'operation': operation},
        ) from exc


def consultation_exception_handler(exc, context):
    """
    DRF exception handler that renders ConsultationError subclasses.
    
    Response body: {"detail": <message>, "code": <code>, ...details}
    Anything else is delegated to the default DRF handler.
    """
    if not isinstance(exc, ConsultationError):
        return exception_handler(exc, context)
    
    view = context.get('view')
    view_name = view.__class__.__name__ if view is not None else 'unknown view'
    request = context.get('request')
    user_id = getattr(getattr(request, 'user', None), 'pk', None)
    
    if isinstance(exc, Forbidden):
        logger.warning(f"Forbidden action in {view_name} by user {user_id}: {exc.message}")
    elif not isinstance(exc, StorageError):
        logger.info(f"{view_name} rejected for user {user_id}: {exc.code} ({exc.message})")
    
    data = {'detail': exc.message, 'code': exc.code}
    data.update(exc.details)
    return Response(data, status=exc.status_code)
