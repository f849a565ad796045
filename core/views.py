"""
API views for the consultation platform.

Views validate request shape with serializers and delegate every state
change to ``core.services``. Domain errors raised there are rendered by
``core.exceptions.consultation_exception_handler``.
"""

import logging

from django.contrib.auth import get_user_model
from django.shortcuts import get_object_or_404
from rest_framework import status
from rest_framework.generics import ListAPIView
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from .exceptions import Forbidden
from .models import Consultation
from .permissions import IsClient, IsConsultant, IsStaffUser
from .serializers import (
    AvailabilityWindowSerializer,
    CancelSerializer,
    ConsultationRequestCreateSerializer,
    ConsultationRequestSerializer,
    ConsultationSessionSerializer,
    CounterProposalSerializer,
    DirectInvitationSerializer,
    InvitationResponseSerializer,
    InvitationSerializer,
    LedgerEntrySerializer,
    MatchSerializer,
    MeetingSerializer,
    RatingSerializer,
    TokenPurchaseSerializer,
    TokenTransactionSerializer,
)
from .services import consultations, invitations, ledger
from .services.state_machine import get_request

User = get_user_model()
logger = logging.getLogger(__name__)


def get_client_ip(request):
    """
    Get client IP address from request.
    Handles proxy headers for accurate IP detection.
    """
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        return x_forwarded_for.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR')


def request_response(consultation_request, status_code=status.HTTP_200_OK):
    consultation_request = get_request(consultation_request.pk)
    return Response(ConsultationRequestSerializer(consultation_request).data, status=status_code)


class ConsultationRequestCreateView(APIView):
    """
    Submit a consultation request.

    POST /api/consultations/
    Request body:
    {
        "problem_description": "Query planner ignores my index ...",
        "tech_stack": ["PostgreSQL", "Django"],
        "error_logs": "optional"
    }

    Success response (201): the created request
    Error responses:
    - 400: Invalid input
    - 402: Not enough tokens for the submission fee
    """
    permission_classes = [IsAuthenticated, IsClient]

    def post(self, request):
        serializer = ConsultationRequestCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        consultation_request = consultations.submit_request(
            request.user,
            serializer.validated_data['problem_description'],
            serializer.validated_data['tech_stack'],
            error_logs=serializer.validated_data['error_logs'],
        )
        return request_response(consultation_request, status.HTTP_201_CREATED)


class ConsultationRequestDetailView(APIView):
    """
    GET /api/consultations/<id>/

    Visible to the requester, the matched consultant and staff.
    """
    permission_classes = [IsAuthenticated]

    def get(self, request, pk):
        consultation_request = get_request(pk)
        if not request.user.is_staff and consultation_request.party_role(request.user) is None:
            logger.warning(
                f"User {request.user.id} from {get_client_ip(request)} "
                f"tried to read request {pk}"
            )
            raise Forbidden('You do not have access to this consultation request.')
        return Response(ConsultationRequestSerializer(consultation_request).data)


class MatchAndInviteView(APIView):
    """
    Rank consultants and invite the best ones.

    POST /api/consultations/<id>/match/
    Request body: {"surge": false, "limit": 3}

    Success response (200): {"invitation_ids": [...], "request": {...}}
    """
    permission_classes = [IsAuthenticated, IsStaffUser]

    def post(self, request, pk):
        serializer = MatchSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        invitation_ids = consultations.match_and_invite(
            pk,
            inviter=request.user,
            surge=serializer.validated_data['surge'],
            limit=serializer.validated_data.get('limit'),
        )
        return Response({
            'invitation_ids': invitation_ids,
            'request': ConsultationRequestSerializer(get_request(pk)).data,
        })


class DirectInvitationView(APIView):
    """
    Invite one specific consultant.

    POST /api/consultations/<id>/invitations/
    Request body: {"consultant_id": 7, "surge": true}

    Success response (201): the invitation
    Error responses:
    - 409: Pending invitation already exists, or the request is past matching
    """
    permission_classes = [IsAuthenticated, IsStaffUser]

    def post(self, request, pk):
        serializer = DirectInvitationSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        invitation = invitations.create_invitation(
            get_request(pk),
            serializer.validated_data['consultant_id'],
            inviter=request.user,
            surge=serializer.validated_data['surge'],
        )
        return Response(InvitationSerializer(invitation).data, status=status.HTTP_201_CREATED)


class InvitationResponseView(APIView):
    """
    Accept or decline an invitation as the invited consultant.

    POST /api/invitations/<id>/respond/
    Request body (accept):
    {"decision": "accept", "proposed_time": "2026-05-01T10:00:00Z", "message": "..."}
    Request body (decline):
    {"decision": "decline", "reason": "..."}

    Success response (200): the owning request
    Error responses:
    - 403: Not the invited consultant
    - 409: Invitation no longer pending, expired, or another consultant won
    """
    permission_classes = [IsAuthenticated, IsConsultant]

    def post(self, request, pk):
        serializer = InvitationResponseSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        consultation_request = consultations.respond_to_invitation(
            pk,
            request.user,
            data['decision'],
            payload={
                'proposed_time': data.get('proposed_time'),
                'message': data['message'],
                'reason': data['reason'],
            },
        )
        return request_response(consultation_request)


class CounterProposalView(APIView):
    """
    POST /api/consultations/<id>/counter-propose/
    Request body: {"proposed_time": "...", "reason": "..."}
    """
    permission_classes = [IsAuthenticated]

    def post(self, request, pk):
        serializer = CounterProposalSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        consultation_request = consultations.propose_counter_time(
            pk,
            request.user,
            serializer.validated_data['proposed_time'],
            reason=serializer.validated_data['reason'],
        )
        return request_response(consultation_request)


class AcceptProposedTimeView(APIView):
    """
    POST /api/consultations/<id>/accept-time/

    The requester agrees to the time the consultant proposed on accepting.
    """
    permission_classes = [IsAuthenticated]

    def post(self, request, pk):
        consultation_request = consultations.accept_proposed_time(pk, request.user)
        return request_response(consultation_request)


class AcceptCounterProposalView(APIView):
    """POST /api/consultations/<id>/accept-counter/"""
    permission_classes = [IsAuthenticated]

    def post(self, request, pk):
        consultation_request = consultations.accept_counter_proposal(pk, request.user)
        return request_response(consultation_request)


class CancelRequestView(APIView):
    """
    POST /api/consultations/<id>/cancel/
    Request body: {"reason": "..."}
    """
    permission_classes = [IsAuthenticated]

    def post(self, request, pk):
        serializer = CancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        consultation_request = consultations.cancel_request(
            pk,
            request.user,
            reason=serializer.validated_data['reason'],
        )
        return request_response(consultation_request)


class ShuffleRequestView(APIView):
    """
    Discard the current invitations and match again.

    POST /api/consultations/<id>/shuffle/

    Success response (200): {"invitation_ids": [...], "request": {...}}
    """
    permission_classes = [IsAuthenticated]

    def post(self, request, pk):
        consultation_request, invitation_ids = consultations.shuffle_request(pk, request.user)
        return Response({
            'invitation_ids': invitation_ids,
            'request': ConsultationRequestSerializer(consultation_request).data,
        })


class AttachMeetingView(APIView):
    """
    Callback of the meeting provisioning job.

    POST /api/consultations/<id>/meeting/
    Request body: {"meeting_reference": "..."}
    """
    permission_classes = [IsAuthenticated, IsStaffUser]

    def post(self, request, pk):
        serializer = MeetingSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        consultation_request = consultations.attach_meeting(
            pk,
            serializer.validated_data['meeting_reference'],
        )
        return request_response(consultation_request)


class StartSessionView(APIView):
    """POST /api/consultations/<id>/start/"""
    permission_classes = [IsAuthenticated]

    def post(self, request, pk):
        consultation_request = consultations.start_session(pk, request.user)
        return request_response(consultation_request)


class CompleteSessionView(APIView):
    """
    POST /api/consultations/<id>/complete/

    Success response (200): {"request": {...}, "session": {...}}
    """
    permission_classes = [IsAuthenticated]

    def post(self, request, pk):
        consultation_request, _charge = consultations.complete_session(pk, request.user)
        session = Consultation.objects.get(consultation_request_id=consultation_request.pk)
        return Response({
            'request': ConsultationRequestSerializer(get_request(pk)).data,
            'session': ConsultationSessionSerializer(session).data,
        })


class RateSessionView(APIView):
    """
    POST /api/sessions/<id>/rate/
    Request body: {"rating": 5, "feedback": "..."}
    """
    permission_classes = [IsAuthenticated]

    def post(self, request, pk):
        serializer = RatingSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        session = consultations.rate_session(
            pk,
            request.user,
            serializer.validated_data['rating'],
            feedback=serializer.validated_data['feedback'],
        )
        return Response(ConsultationSessionSerializer(session).data)


class RefundSessionView(APIView):
    """
    POST /api/sessions/<id>/refund/

    Success response (200): the refund transaction
    Error responses:
    - 400: Nothing left to refund
    """
    permission_classes = [IsAuthenticated, IsStaffUser]

    def post(self, request, pk):
        session = get_object_or_404(Consultation, pk=pk)
        transaction = ledger.refund(session)
        logger.info(f"Staff user {request.user.id} refunded session {pk}")
        return Response(TokenTransactionSerializer(transaction).data)


class AvailabilityView(APIView):
    """
    Read or replace the weekly availability of the current consultant.

    GET /api/consultants/me/availability/
    PUT /api/consultants/me/availability/
    Request body: [{"day_of_week": 1, "start_time": "09:00", "end_time": "17:00",
                    "timezone": "Europe/Berlin"}, ...]

    PUT replaces every existing window.
    """
    permission_classes = [IsAuthenticated, IsConsultant]

    def get(self, request):
        windows = request.user.consultant_profile.availability_windows.all()
        return Response(AvailabilityWindowSerializer(windows, many=True).data)

    def put(self, request):
        serializer = AvailabilityWindowSerializer(data=request.data, many=True)
        serializer.is_valid(raise_exception=True)

        windows = consultations.replace_availability(
            request.user.consultant_profile,
            serializer.validated_data,
        )
        return Response(AvailabilityWindowSerializer(windows, many=True).data)


class TokenBalanceView(APIView):
    """GET /api/tokens/balance/"""
    permission_classes = [IsAuthenticated]

    def get(self, request):
        balance = User.objects.values_list('tokens_balance', flat=True).get(pk=request.user.pk)
        return Response({'tokens_balance': balance})


class TokenTransactionListView(ListAPIView):
    """GET /api/tokens/transactions/ (newest first, paginated)"""
    permission_classes = [IsAuthenticated]
    serializer_class = TokenTransactionSerializer

    def get_queryset(self):
        return self.request.user.token_transactions.order_by('-id')


class TokenPurchaseView(APIView):
    """
    Credit a paid token package.

    POST /api/tokens/purchase/
    Request body: {"user_id": 3, "package_id": 1, "external_reference": "pi_..."}

    Called by the payment integration (a staff account) once the provider has
    confirmed the payment. Replaying a reference returns the original entry.
    """
    permission_classes = [IsAuthenticated, IsStaffUser]

    def post(self, request):
        serializer = TokenPurchaseSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        user = get_object_or_404(User, pk=data['user_id'])

        transaction = ledger.purchase(
            user,
            data['package_id'],
            external_reference=data['external_reference'],
        )
        logger.info(f"Staff user {request.user.id} confirmed purchase {transaction.pk} for user {user.id}")
        return Response(TokenTransactionSerializer(transaction).data, status=status.HTTP_201_CREATED)


class LedgerCreditView(APIView):
    """
    POST /api/tokens/credit/
    Request body: {"user_id": 3, "amount": 10, "kind": "bonus", "description": "..."}
    """
    permission_classes = [IsAuthenticated, IsStaffUser]

    def post(self, request):
        serializer = LedgerEntrySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        user = get_object_or_404(User, pk=data['user_id'])

        transaction = ledger.credit(
            user,
            data['amount'],
            kind=data['kind'],
            description=data['description'],
        )
        logger.info(f"Staff user {request.user.id} credited {data['amount']} tokens to user {user.id}")
        return Response(TokenTransactionSerializer(transaction).data, status=status.HTTP_201_CREATED)


class LedgerDebitView(APIView):
    """
    POST /api/tokens/debit/
    Request body: {"user_id": 3, "amount": 10, "description": "..."}
    """
    permission_classes = [IsAuthenticated, IsStaffUser]

    def post(self, request):
        serializer = LedgerEntrySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        user = get_object_or_404(User, pk=data['user_id'])

        transaction = ledger.debit(user, data['amount'], description=data['description'])
        logger.info(f"Staff user {request.user.id} debited {data['amount']} tokens from user {user.id}")
        return Response(TokenTransactionSerializer(transaction).data, status=status.HTTP_201_CREATED)
