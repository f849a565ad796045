"""
Token ledger.

User.tokens_balance is a cached projection of the user's append-only
TokenTransaction log. Each mutation locks the user row, computes the new
balance, writes it and appends exactly one transaction in one atomic block.
Writers to the same user queue on the row lock; different users never block
each other.

Lock order is session row first, then user row.
"""

import logging
from dataclasses import dataclass, field

from django.contrib.auth import get_user_model
from django.utils import timezone

from ..exceptions import (
    InsufficientBalance,
    NotFound,
    NotRespondable,
    NothingToRefund,
    ValidationError,
    atomic_operation,
)
from ..models import Consultation, ConsultationRequest, TokenTransaction

logger = logging.getLogger(__name__)

User = get_user_model()


def _user_id(user):
    return user.pk if isinstance(user, User) else user


def _validate_amount(amount):
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(
            'Amount must be a positive whole number of tokens.',
            code='invalid_amount',
            details={'amount': amount},
        )


def _lock_user(user_id):
    try:
        return User.objects.select_for_update().get(pk=user_id)
    except User.DoesNotExist:
        raise NotFound(f'User {user_id} does not exist.')


def _append(user, amount, kind, description, **links):
    new_balance = user.tokens_balance + amount
    User.objects.filter(pk=user.pk).update(tokens_balance=new_balance)
    user.tokens_balance = new_balance
    return TokenTransaction.objects.create(
        user=user,
        kind=kind,
        amount=amount,
        balance_after=new_balance,
        description=description[:255],
        **links
    )


def credit(user, amount, kind=TokenTransaction.KIND_BONUS, description='',
           external_reference='', token_package=None, consultation=None,
           consultation_request=None):
    """
    Add tokens to a user's balance.

    Args:
        user: User instance or id
        amount: Positive number of tokens
        kind: purchase, refund, bonus or adjustment

    Returns:
        TokenTransaction: The appended entry

    Raises:
        ValidationError: For a non-positive amount or a debit kind
    """
    _validate_amount(amount)
    if kind not in TokenTransaction.CREDIT_KINDS:
        raise ValidationError(f'{kind} is not a credit kind.', code='invalid_kind')

    with atomic_operation('token credit'):
        locked = _lock_user(_user_id(user))
        transaction = _append(
            locked,
            amount,
            kind,
            description or f'{kind.capitalize()} of {amount} tokens',
            external_reference=external_reference,
            token_package=token_package,
            consultation=consultation,
            consultation_request=consultation_request,
        )

    logger.info(f"Credited {amount} tokens ({kind}) to user {locked.pk}, balance {locked.tokens_balance}")
    return transaction


def debit(user, amount, description='', consultation=None, consultation_request=None):
    """
    Remove tokens from a user's balance.

    The balance check happens under the row lock, so a debit either applies in
    full or not at all.

    Returns:
        TokenTransaction: The appended entry

    Raises:
        InsufficientBalance: If the balance is lower than the amount
    """
    _validate_amount(amount)

    with atomic_operation('token debit'):
        locked = _lock_user(_user_id(user))
        if locked.tokens_balance < amount:
            raise InsufficientBalance(
                f'Insufficient token balance. Required: {amount}, available: {locked.tokens_balance}.',
                details={'required': amount, 'available': locked.tokens_balance},
            )
        transaction = _append(
            locked,
            -amount,
            TokenTransaction.KIND_DEDUCTION,
            description or f'Deduction of {amount} tokens',
            consultation=consultation,
            consultation_request=consultation_request,
        )

    logger.info(f"Debited {amount} tokens from user {locked.pk}, balance {locked.tokens_balance}")
    return transaction


def purchase(user, package, external_reference=''):
    """
    Credit the tokens of a purchased package.

    A payment reference is credited at most once: replaying it for the same
    user returns the original transaction.

    Raises:
        ValidationError: Inactive package, or the reference belongs to another user
    """
    if not package.is_active:
        raise ValidationError(f'Token package "{package.name}" is not available.', code='inactive_package')

    with atomic_operation('token purchase'):
        locked = _lock_user(_user_id(user))
        if external_reference:
            existing = TokenTransaction.objects.filter(
                kind=TokenTransaction.KIND_PURCHASE,
                external_reference=external_reference,
            ).first()
            if existing is not None:
                if existing.user_id != locked.pk:
                    raise ValidationError(
                        'This payment reference was already used for another account.',
                        code='duplicate_reference',
                        details={'external_reference': external_reference},
                    )
                logger.info(
                    f"Purchase {external_reference} already credited to user {locked.pk}, "
                    f"returning transaction {existing.pk}"
                )
                return existing

        return credit(
            locked,
            package.token_amount,
            kind=TokenTransaction.KIND_PURCHASE,
            description=f'Purchased {package.name}',
            external_reference=external_reference,
            token_package=package,
        )


def _lock_session(session_id):
    try:
        return Consultation.objects.select_for_update().get(pk=session_id)
    except Consultation.DoesNotExist:
        raise NotFound(f'Consultation session {session_id} does not exist.')


def charge_session(session):
    """
    Charge the requester for a completed session.

    A session is charged once. Zero-minute sessions cost nothing and return None.

    Raises:
        NotRespondable: If the session is not completed or was already charged
        InsufficientBalance: If the requester cannot cover the charge
    """
    with atomic_operation('session charge'):
        locked = _lock_session(session.pk)
        if locked.status != Consultation.STATUS_COMPLETED:
            raise NotRespondable('Only completed sessions can be charged.', code='session_not_completed')
        if locked.tokens_charged > 0:
            raise NotRespondable('This session has already been charged.', code='already_charged')

        amount = locked.calculate_tokens_to_charge()
        if amount <= 0:
            return None

        transaction = debit(
            locked.requester_id,
            amount,
            description=f'Consultation session #{locked.pk}: {locked.duration_minutes} minutes',
            consultation=locked,
        )
        locked.tokens_charged = amount
        locked.save(update_fields=['tokens_charged', 'updated_at'])

    session.tokens_charged = amount
    return transaction


def refund(session):
    """
    Credit back what a session charged and has not refunded yet.

    Raises:
        NothingToRefund: If nothing is left to refund for the session
    """
    with atomic_operation('session refund'):
        locked = _lock_session(session.pk)
        amount = locked.refundable_tokens()
        if amount <= 0:
            raise NothingToRefund(
                'This session has no charged tokens to refund.',
                details={'session_id': locked.pk},
            )

        transaction = credit(
            locked.requester_id,
            amount,
            kind=TokenTransaction.KIND_REFUND,
            description=f'Refund for consultation session #{locked.pk}',
            consultation=locked,
        )
        locked.tokens_refunded += amount
        locked.save(update_fields=['tokens_refunded', 'updated_at'])

    session.tokens_refunded = locked.tokens_refunded
    return transaction


def refund_submission_fee(consultation_request, now=None):
    """
    Return the fee held when the request was submitted, at most once.

    Expected to run inside the caller's transaction with the request row locked.

    Returns:
        TokenTransaction or None: None when there is no fee or it was refunded already
    """
    if not consultation_request.submission_fee or consultation_request.fee_refunded_at:
        return None

    transaction = credit(
        consultation_request.requester_id,
        consultation_request.submission_fee,
        kind=TokenTransaction.KIND_REFUND,
        description=f'Submission fee refund for request #{consultation_request.pk}',
        consultation_request=consultation_request,
    )
    refunded_at = now or timezone.now()
    ConsultationRequest.objects.filter(pk=consultation_request.pk).update(fee_refunded_at=refunded_at)
    consultation_request.fee_refunded_at = refunded_at
    return transaction


@dataclass
class LedgerReplay:
    """Result of replaying a user's transaction log."""
    user_id: int
    cached_balance: int
    replayed_balance: int = 0
    transaction_count: int = 0
    mismatched_transactions: list = field(default_factory=list)

    @property
    def is_consistent(self):
        return not self.mismatched_transactions and self.cached_balance == self.replayed_balance


def replay(user):
    """
    Sum a user's transactions in creation order and compare with stored values.

    Every entry whose balance_after differs from the running sum is reported,
    as is a cached balance that differs from the final sum.
    """
    user_id = _user_id(user)
    cached_balance = User.objects.filter(pk=user_id).values_list('tokens_balance', flat=True).first()
    if cached_balance is None:
        raise NotFound(f'User {user_id} does not exist.')

    result = LedgerReplay(user_id=user_id, cached_balance=cached_balance)
    entries = TokenTransaction.objects.filter(user_id=user_id).order_by('id')
    for entry_id, amount, balance_after in entries.values_list('id', 'amount', 'balance_after').iterator():
        result.replayed_balance += amount
        result.transaction_count += 1
        if balance_after != result.replayed_balance:
            result.mismatched_transactions.append(entry_id)
    return result


def reconcile(user):
    """
    Rewrite a drifted cached balance from the transaction log.

    Returns:
        LedgerReplay: The replay taken under the user lock before any change
    """
    with atomic_operation('ledger reconcile'):
        locked = _lock_user(_user_id(user))
        result = replay(locked.pk)
        if result.cached_balance != result.replayed_balance and result.replayed_balance >= 0:
            User.objects.filter(pk=locked.pk).update(tokens_balance=result.replayed_balance)
            logger.warning(
                f"Reconciled balance of user {locked.pk}: "
                f"{result.cached_balance} -> {result.replayed_balance}"
            )
    return result
