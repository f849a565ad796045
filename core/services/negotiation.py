"""
Meeting time negotiation between the requester and the matched consultant.

    time_proposed --counter--> time_counter_proposed --counter--> time_counter_proposed
    time_proposed --accept proposed--> scheduled
    time_counter_proposed --accept counter--> scheduled

Scheduling sends ``consultation_scheduled`` inside the same transaction; the
receiver creates the billable session.
"""

import logging

from django.db.models import F
from django.utils import timezone

from ..conf import get_setting
from ..exceptions import InvalidProposedTime, NotRespondable, atomic_operation
from ..models import ConsultationRequest
from ..signals import consultation_scheduled
from . import state_machine

logger = logging.getLogger(__name__)


def _require_future(proposed_time, now):
    if proposed_time is None or proposed_time <= now:
        raise InvalidProposedTime('The proposed time must be in the future.')


def counter_propose(request_id, actor, new_time, reason='', now=None):
    """
    Propose a different meeting time.

    Allowed from time_proposed and time_counter_proposed, by either party,
    until MAX_PROPOSAL_ROUNDS counter-proposals were made.

    Returns:
        ConsultationRequest: The updated request

    Raises:
        Forbidden: If the actor is not a party
        InvalidProposedTime: If new_time is not strictly in the future
        NotRespondable: Wrong state, round limit reached, or lost a race
    """
    now = now or timezone.now()
    consultation_request = state_machine.get_request(request_id)
    role = state_machine.require_party(consultation_request, actor)
    _require_future(new_time, now)

    with atomic_operation('counter-proposal'):
        locked = state_machine.get_request(request_id, lock=True)
        if locked.status not in (
            ConsultationRequest.STATUS_TIME_PROPOSED,
            ConsultationRequest.STATUS_TIME_COUNTER_PROPOSED,
        ):
            raise NotRespondable(
                f'Cannot counter-propose while the request is {locked.status}.',
                details={'status': locked.status},
            )

        max_rounds = get_setting('MAX_PROPOSAL_ROUNDS')
        if max_rounds is not None and locked.proposal_rounds >= max_rounds:
            raise NotRespondable(
                f'The limit of {max_rounds} counter-proposals has been reached. '
                'Accept the current time or cancel the request.',
                code='proposal_rounds_exhausted',
                details={'proposal_rounds': locked.proposal_rounds},
            )

        state_machine.transition(
            locked,
            ConsultationRequest.STATUS_TIME_COUNTER_PROPOSED,
            now=now,
            counter_proposed_time=new_time,
            counter_proposal_reason=(reason or '')[:500],
            last_proposed_by=role,
            proposal_rounds=F('proposal_rounds') + 1,
        )

    logger.info(
        f"{role.capitalize()} counter-proposed {new_time.isoformat()} on request {request_id} "
        f"(round {locked.proposal_rounds})"
    )
    return locked


def _schedule(locked, agreed_time, now):
    state_machine.transition(
        locked,
        ConsultationRequest.STATUS_SCHEDULED,
        now=now,
        agreed_time=agreed_time,
        requester_confirmed=True,
        consultant_confirmed=True,
    )
    consultation_scheduled.send(sender=ConsultationRequest, consultation_request=locked)


def accept_proposed_time(request_id, actor, now=None):
    """
    Agree to the consultant's proposed time.

    Valid only from time_proposed, and only for the party who did not
    propose it (the requester, since the consultant proposes on accept).

    Raises:
        Forbidden: If the actor is not a party
        NotRespondable: Wrong state, or the actor proposed the time
    """
    now = now or timezone.now()
    consultation_request = state_machine.get_request(request_id)
    role = state_machine.require_party(consultation_request, actor)

    with atomic_operation('accept proposed time'):
        locked = state_machine.get_request(request_id, lock=True)
        if locked.status != ConsultationRequest.STATUS_TIME_PROPOSED:
            raise NotRespondable(
                'There is no proposed time awaiting acceptance.',
                details={'status': locked.status},
            )
        if locked.last_proposed_by == role:
            raise NotRespondable(
                'You cannot accept your own proposed time.',
                code='own_proposal',
            )
        _schedule(locked, locked.proposed_time, now)

    logger.info(f"{role.capitalize()} accepted proposed time on request {request_id}, scheduled")
    return locked


def accept_counter_proposal(request_id, actor, now=None):
    """
    Agree to the latest counter-proposal.

    Only the party who did not make the counter-proposal can accept it.

    Raises:
        Forbidden: If the actor is not a party
        NotRespondable: Wrong state, or the actor made the counter-proposal
    """
    now = now or timezone.now()
    consultation_request = state_machine.get_request(request_id)
    role = state_machine.require_party(consultation_request, actor)

    with atomic_operation('accept counter-proposal'):
        locked = state_machine.get_request(request_id, lock=True)
        if locked.status != ConsultationRequest.STATUS_TIME_COUNTER_PROPOSED:
            raise NotRespondable(
                'There is no counter-proposal awaiting acceptance.',
                details={'status': locked.status},
            )
        if locked.last_proposed_by == role:
            raise NotRespondable(
                'You cannot accept your own counter-proposal.',
                code='own_proposal',
            )
        _schedule(locked, locked.counter_proposed_time, now)

    logger.info(f"{role.capitalize()} accepted counter-proposal on request {request_id}, scheduled")
    return locked
