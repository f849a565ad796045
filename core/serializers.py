"""
Serializers for the consultation API.

Input serializers check request shape only. Business rules (future times,
state guards, balances) are enforced by the service layer so they hold for
every caller, not just HTTP.
"""

from rest_framework import serializers

from .conf import get_setting
from .models import (
    Consultant,
    ConsultantAvailability,
    ConsultantInvitation,
    Consultation,
    ConsultationRequest,
    TokenPackage,
    TokenTransaction,
)


class ConsultantSummarySerializer(serializers.ModelSerializer):
    """Public view of a consultant shown to requesters."""

    name = serializers.SerializerMethodField()

    class Meta:
        model = Consultant
        fields = ['id', 'name', 'specializations', 'rating_average', 'completed_sessions']
        read_only_fields = fields

    def get_name(self, obj):
        full_name = obj.user.get_full_name()
        return full_name or obj.user.username


class InvitationSerializer(serializers.ModelSerializer):

    class Meta:
        model = ConsultantInvitation
        fields = [
            'id',
            'consultation_request',
            'consultant',
            'status',
            'is_surge',
            'surge_multiplier',
            'invited_at',
            'expires_at',
            'responded_at',
            'decline_reason',
            'proposed_time',
            'proposal_message',
        ]
        read_only_fields = fields


class ConsultationRequestSerializer(serializers.ModelSerializer):
    """
    Full state of a consultation request.

    Fields:
    - status: Current lifecycle state
    - matched_consultant: Consultant summary while matched, otherwise null
    - proposed_time / counter_proposed_time / agreed_time: Negotiation state
    - remaining_shuffles: How many more shuffles the requester may use
    """

    matched_consultant = ConsultantSummarySerializer(read_only=True)
    remaining_shuffles = serializers.SerializerMethodField()

    class Meta:
        model = ConsultationRequest
        fields = [
            'id',
            'requester',
            'problem_description',
            'tech_stack',
            'error_logs',
            'status',
            'matched_consultant',
            'matched_at',
            'shuffle_count',
            'remaining_shuffles',
            'submission_fee',
            'proposed_time',
            'counter_proposed_time',
            'counter_proposal_reason',
            'last_proposed_by',
            'proposal_rounds',
            'agreed_time',
            'requester_confirmed',
            'consultant_confirmed',
            'meeting_reference',
            'cancelled_at',
            'cancellation_reason',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields

    def get_remaining_shuffles(self, obj):
        return obj.remaining_shuffles(get_setting('MAX_SHUFFLES'))


class ConsultationRequestCreateSerializer(serializers.Serializer):
    problem_description = serializers.CharField(max_length=5000, trim_whitespace=True)
    tech_stack = serializers.ListField(
        child=serializers.CharField(max_length=50, trim_whitespace=True),
        allow_empty=False,
        max_length=20,
    )
    error_logs = serializers.CharField(max_length=20000, required=False, allow_blank=True, default='')


class MatchSerializer(serializers.Serializer):
    surge = serializers.BooleanField(required=False, default=False)
    limit = serializers.IntegerField(required=False, min_value=1, max_value=20)


class DirectInvitationSerializer(serializers.Serializer):
    consultant_id = serializers.IntegerField(min_value=1)
    surge = serializers.BooleanField(required=False, default=False)

    def validate_consultant_id(self, value):
        try:
            return Consultant.objects.get(pk=value)
        except Consultant.DoesNotExist:
            raise serializers.ValidationError('Consultant not found.')


class InvitationResponseSerializer(serializers.Serializer):
    """
    Accept or decline an invitation.

    accept requires proposed_time; message is optional.
    decline takes an optional reason.
    """

    decision = serializers.ChoiceField(choices=['accept', 'decline'])
    proposed_time = serializers.DateTimeField(required=False, allow_null=True)
    message = serializers.CharField(max_length=500, required=False, allow_blank=True, default='')
    reason = serializers.CharField(max_length=500, required=False, allow_blank=True, default='')

    def validate(self, attrs):
        if attrs['decision'] == 'accept' and not attrs.get('proposed_time'):
            raise serializers.ValidationError({
                'proposed_time': 'A proposed time is required to accept an invitation.'
            })
        return attrs


class CounterProposalSerializer(serializers.Serializer):
    proposed_time = serializers.DateTimeField()
    reason = serializers.CharField(max_length=500, required=False, allow_blank=True, default='')


class CancelSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=500, required=False, allow_blank=True, default='')


class MeetingSerializer(serializers.Serializer):
    meeting_reference = serializers.CharField(max_length=255)


class ConsultationSessionSerializer(serializers.ModelSerializer):

    class Meta:
        model = Consultation
        fields = [
            'id',
            'consultation_request',
            'consultant',
            'status',
            'scheduled_at',
            'started_at',
            'ended_at',
            'duration_minutes',
            'token_rate_per_minute',
            'tokens_charged',
            'tokens_refunded',
            'user_rating',
            'user_feedback',
        ]
        read_only_fields = fields


class RatingSerializer(serializers.Serializer):
    rating = serializers.IntegerField(min_value=1, max_value=5)
    feedback = serializers.CharField(max_length=2000, required=False, allow_blank=True, default='')


class AvailabilityWindowSerializer(serializers.ModelSerializer):

    class Meta:
        model = ConsultantAvailability
        fields = ['id', 'day_of_week', 'start_time', 'end_time', 'timezone', 'is_active']
        read_only_fields = ['id']

    def validate(self, attrs):
        if attrs['end_time'] <= attrs['start_time']:
            raise serializers.ValidationError({'end_time': 'End time must be after start time.'})
        return attrs


class TokenTransactionSerializer(serializers.ModelSerializer):

    class Meta:
        model = TokenTransaction
        fields = [
            'id',
            'kind',
            'amount',
            'balance_after',
            'description',
            'token_package',
            'consultation',
            'consultation_request',
            'created_at',
        ]
        read_only_fields = fields


class TokenPurchaseSerializer(serializers.Serializer):
    """Payment confirmation forwarded by the payment integration."""

    user_id = serializers.IntegerField(min_value=1)
    package_id = serializers.IntegerField(min_value=1)
    external_reference = serializers.CharField(max_length=255, required=False, allow_blank=True, default='')

    def validate_package_id(self, value):
        try:
            return TokenPackage.objects.get(pk=value, is_active=True)
        except TokenPackage.DoesNotExist:
            raise serializers.ValidationError('Token package not found.')


class LedgerEntrySerializer(serializers.Serializer):
    """Manual credit or debit by an operator."""

    user_id = serializers.IntegerField(min_value=1)
    amount = serializers.IntegerField(min_value=1)
    kind = serializers.ChoiceField(
        choices=[TokenTransaction.KIND_BONUS, TokenTransaction.KIND_ADJUSTMENT, TokenTransaction.KIND_REFUND],
        required=False,
        default=TokenTransaction.KIND_ADJUSTMENT,
    )
    description = serializers.CharField(max_length=255, required=False, allow_blank=True, default='')
