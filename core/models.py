"""
Data model for the consultation platform.

Requests, invitations and balances are changed through the service layer in
``core.services``, which applies status-guarded queryset updates. The
``can_transition_to`` helpers here describe the allowed moves; they do not
perform them.
"""

from decimal import Decimal, ROUND_CEILING
from zoneinfo import ZoneInfo

from django.contrib.auth.models import AbstractUser
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator, MaxValueValidator
from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from .validators import validate_technology_tags, validate_timezone_name


class User(AbstractUser):
    """
    Custom User model extending Django's AbstractUser.

    Additional fields:
    - email: Required, unique email address
    - user_type: Either 'client' or 'consultant'
    - tokens_balance: Cached projection of the token ledger, never negative
    - subscription_expires_at: End of the paid subscription (matching priority)
    - created_at: Account creation timestamp
    - updated_at: Last update timestamp
    """

    USER_TYPE_CHOICES = [
        ('client', 'Client'),
        ('consultant', 'Consultant'),
    ]

    email = models.EmailField(
        _('email address'),
        unique=True,
        blank=False,
        null=False,
        error_messages={
            'unique': _('A user with that email already exists.'),
        },
        help_text=_('Required. Enter a valid email address.')
    )

    user_type = models.CharField(
        _('user type'),
        max_length=10,
        choices=USER_TYPE_CHOICES,
        default='client',
        help_text=_('Whether the account asks for help or provides it.')
    )

    tokens_balance = models.PositiveIntegerField(
        _('tokens balance'),
        default=0,
        help_text=_('Current token balance. Derived from the token transaction log.')
    )

    subscription_expires_at = models.DateTimeField(
        _('subscription expires at'),
        null=True,
        blank=True,
        help_text=_('Requests from users with an active subscription are matched first.')
    )

    created_at = models.DateTimeField(
        _('created at'),
        auto_now_add=True,
        help_text=_('Timestamp when the user account was created')
    )

    updated_at = models.DateTimeField(
        _('updated at'),
        auto_now=True,
        help_text=_('Timestamp when the user account was last updated')
    )

    class Meta:
        verbose_name = _('user')
        verbose_name_plural = _('users')
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['email'], name='core_user_email_7ec0d5_idx'),
            models.Index(fields=['user_type'], name='core_user_user_ty_1ba2d3_idx'),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(tokens_balance__gte=0),
                name='user_tokens_balance_non_negative'
            ),
        ]

    def __str__(self):
        return f"{self.email} ({self.get_user_type_display()})"

    def is_client(self):
        return self.user_type == 'client'

    def is_consultant(self):
        return self.user_type == 'consultant'

    def has_active_subscription(self, now=None):
        """Return True while the subscription end lies in the future."""
        if self.subscription_expires_at is None:
            return False
        return self.subscription_expires_at > (now or timezone.now())

    def clean(self):
        super().clean()
        if self.email:
            self.email = self.email.lower().strip()


class ConsultantQuerySet(models.QuerySet):

    def eligible(self):
        """Consultants that may be matched: approved and currently available."""
        return self.filter(status=Consultant.STATUS_APPROVED, is_available=True)


class Consultant(models.Model):
    """
    Consultant profile attached to a user account.

    Only approved and available consultants take part in matching.
    rating_average and completed_sessions are caches maintained by signals
    from the Consultation (session) table.
    """

    STATUS_PENDING = 'pending'
    STATUS_APPROVED = 'approved'
    STATUS_SUSPENDED = 'suspended'

    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending approval'),
        (STATUS_APPROVED, 'Approved'),
        (STATUS_SUSPENDED, 'Suspended'),
    ]

    user = models.OneToOneField(
        User,
        on_delete=models.CASCADE,
        related_name='consultant_profile',
        help_text=_('User account of the consultant')
    )

    specializations = models.JSONField(
        _('specializations'),
        default=list,
        blank=True,
        validators=[validate_technology_tags],
        help_text=_('Technology tags the consultant can help with')
    )

    bio = models.TextField(
        _('bio'),
        blank=True,
        default='',
    )

    status = models.CharField(
        _('approval status'),
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_PENDING,
    )

    is_available = models.BooleanField(
        _('available'),
        default=False,
        help_text=_('Whether the consultant currently accepts new requests')
    )

    is_surge_available = models.BooleanField(
        _('surge available'),
        default=False,
        help_text=_('Whether the consultant accepts surge invitations at a boosted rate')
    )

    rating_average = models.DecimalField(
        _('rating average'),
        max_digits=3,
        decimal_places=2,
        default=Decimal('0.00'),
        validators=[
            MinValueValidator(Decimal('0.00'), message=_('Rating cannot be negative.')),
            MaxValueValidator(Decimal('5.00'), message=_('Rating cannot exceed 5.00.'))
        ],
        help_text=_('Mean rating over rated completed sessions')
    )

    completed_sessions = models.PositiveIntegerField(
        _('completed sessions'),
        default=0,
    )

    approved_at = models.DateTimeField(
        _('approved at'),
        null=True,
        blank=True,
    )

    created_at = models.DateTimeField(_('created at'), auto_now_add=True)

    updated_at = models.DateTimeField(_('updated at'), auto_now=True)

    objects = ConsultantQuerySet.as_manager()

    class Meta:
        verbose_name = _('consultant')
        verbose_name_plural = _('consultants')
        ordering = ['id']
        indexes = [
            models.Index(fields=['status', 'is_available'], name='core_consul_status_4b1c2e_idx'),
        ]

    def __str__(self):
        return f"Consultant {self.user.email}"

    def is_approved(self):
        return self.status == self.STATUS_APPROVED

    def is_eligible_for_matching(self):
        return self.is_approved() and self.is_available

    def clean(self):
        """
        Validate the profile.

        Raises:
            ValidationError: If the owning user is not a consultant account
        """
        super().clean()
        if self.user_id and not self.user.is_consultant():
            raise ValidationError({
                'user': _('Only users with user_type="consultant" can have a consultant profile.')
            })

    def save(self, *args, **kwargs):
        self.full_clean()
        super().save(*args, **kwargs)


class ConsultantAvailability(models.Model):
    """
    Weekly availability window of a consultant.

    day_of_week uses 0 for Sunday through 6 for Saturday. Times are wall-clock
    times in the window's own timezone. Windows are replaced wholesale.
    """

    DAY_CHOICES = [
        (0, 'Sunday'),
        (1, 'Monday'),
        (2, 'Tuesday'),
        (3, 'Wednesday'),
        (4, 'Thursday'),
        (5, 'Friday'),
        (6, 'Saturday'),
    ]

    consultant = models.ForeignKey(
        Consultant,
        on_delete=models.CASCADE,
        related_name='availability_windows',
    )

    day_of_week = models.PositiveSmallIntegerField(
        _('day of week'),
        choices=DAY_CHOICES,
    )

    start_time = models.TimeField(_('start time'))

    end_time = models.TimeField(_('end time'))

    timezone = models.CharField(
        _('timezone'),
        max_length=64,
        default='UTC',
        validators=[validate_timezone_name],
    )

    is_active = models.BooleanField(_('active'), default=True)

    class Meta:
        verbose_name = _('availability window')
        verbose_name_plural = _('availability windows')
        ordering = ['consultant', 'day_of_week', 'start_time']

    def __str__(self):
        return f"{self.get_day_of_week_display()} {self.start_time}-{self.end_time} ({self.timezone})"

    def clean(self):
        super().clean()
        if self.start_time and self.end_time and self.end_time <= self.start_time:
            raise ValidationError({
                'end_time': _('End time must be after start time.')
            })

    def save(self, *args, **kwargs):
        self.full_clean()
        super().save(*args, **kwargs)


def local_day_and_time(instant, tz_name):
    """Return (day_of_week with 0=Sunday, wall-clock time) of an instant in a timezone."""
    local = instant.astimezone(ZoneInfo(tz_name))
    return (local.weekday() + 1) % 7, local.time()


# Statuses in which a request has a matched consultant.
MATCHED_REQUEST_STATUSES = (
    'matched',
    'time_proposed',
    'time_counter_proposed',
    'scheduled',
    'ready',
    'in_progress',
)


class ConsultationRequest(models.Model):
    """
    A requester's ask for a consultation.

    Status flow:
        pending -> matching -> invited|matched -> time_proposed
        <-> time_counter_proposed -> scheduled -> ready -> in_progress
        -> completed, with cancelled reachable from every non-terminal state.

    pending is re-entered from invited/matched when every invitation ended
    without a winner. matched_consultant is set exactly while the status is
    one of MATCHED_STATUSES; a database constraint enforces this.
    """

    STATUS_PENDING = 'pending'
    STATUS_MATCHING = 'matching'
    STATUS_INVITED = 'invited'
    STATUS_MATCHED = 'matched'
    STATUS_TIME_PROPOSED = 'time_proposed'
    STATUS_TIME_COUNTER_PROPOSED = 'time_counter_proposed'
    STATUS_SCHEDULED = 'scheduled'
    STATUS_READY = 'ready'
    STATUS_IN_PROGRESS = 'in_progress'
    STATUS_COMPLETED = 'completed'
    STATUS_CANCELLED = 'cancelled'

    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_MATCHING, 'Matching'),
        (STATUS_INVITED, 'Invited'),
        (STATUS_MATCHED, 'Matched'),
        (STATUS_TIME_PROPOSED, 'Time proposed'),
        (STATUS_TIME_COUNTER_PROPOSED, 'Time counter-proposed'),
        (STATUS_SCHEDULED, 'Scheduled'),
        (STATUS_READY, 'Ready'),
        (STATUS_IN_PROGRESS, 'In progress'),
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_CANCELLED, 'Cancelled'),
    ]

    MATCHED_STATUSES = MATCHED_REQUEST_STATUSES

    TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_CANCELLED)

    VALID_TRANSITIONS = {
        STATUS_PENDING: [STATUS_MATCHING, STATUS_INVITED, STATUS_CANCELLED],
        STATUS_MATCHING: [STATUS_INVITED, STATUS_MATCHED, STATUS_PENDING, STATUS_CANCELLED],
        STATUS_INVITED: [STATUS_TIME_PROPOSED, STATUS_PENDING, STATUS_CANCELLED],
        STATUS_MATCHED: [STATUS_TIME_PROPOSED, STATUS_PENDING, STATUS_CANCELLED],
        STATUS_TIME_PROPOSED: [STATUS_TIME_COUNTER_PROPOSED, STATUS_SCHEDULED, STATUS_CANCELLED],
        STATUS_TIME_COUNTER_PROPOSED: [STATUS_TIME_COUNTER_PROPOSED, STATUS_SCHEDULED, STATUS_CANCELLED],
        STATUS_SCHEDULED: [STATUS_READY, STATUS_CANCELLED],
        STATUS_READY: [STATUS_IN_PROGRESS, STATUS_CANCELLED],
        STATUS_IN_PROGRESS: [STATUS_COMPLETED, STATUS_CANCELLED],
        STATUS_COMPLETED: [],
        STATUS_CANCELLED: [],
    }

    ROLE_REQUESTER = 'requester'
    ROLE_CONSULTANT = 'consultant'

    ROLE_CHOICES = [
        (ROLE_REQUESTER, 'Requester'),
        (ROLE_CONSULTANT, 'Consultant'),
    ]

    requester = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='consultation_requests',
        help_text=_('User asking for help')
    )

    problem_description = models.TextField(_('problem description'))

    tech_stack = models.JSONField(
        _('technology stack'),
        default=list,
        validators=[validate_technology_tags],
        help_text=_('Technologies the requester needs help with')
    )

    error_logs = models.TextField(_('error logs'), blank=True, default='')

    status = models.CharField(
        _('status'),
        max_length=25,
        choices=STATUS_CHOICES,
        default=STATUS_PENDING,
    )

    matched_consultant = models.ForeignKey(
        Consultant,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='matched_requests',
    )

    matched_at = models.DateTimeField(_('matched at'), null=True, blank=True)

    excluded_consultants = models.JSONField(
        _('excluded consultants'),
        default=list,
        blank=True,
        help_text=_('Ids of consultants already tried for this request')
    )

    shuffle_count = models.PositiveSmallIntegerField(_('shuffle count'), default=0)

    submission_fee = models.PositiveIntegerField(
        _('submission fee'),
        default=0,
        help_text=_('Tokens held when the request was submitted')
    )

    fee_refunded_at = models.DateTimeField(_('fee refunded at'), null=True, blank=True)

    proposed_time = models.DateTimeField(_('proposed time'), null=True, blank=True)

    counter_proposed_time = models.DateTimeField(_('counter-proposed time'), null=True, blank=True)

    counter_proposal_reason = models.CharField(
        _('counter-proposal reason'),
        max_length=500,
        blank=True,
        default='',
    )

    last_proposed_by = models.CharField(
        _('last proposed by'),
        max_length=20,
        choices=ROLE_CHOICES,
        blank=True,
        default='',
    )

    proposal_rounds = models.PositiveIntegerField(_('proposal rounds'), default=0)

    agreed_time = models.DateTimeField(_('agreed time'), null=True, blank=True)

    requester_confirmed = models.BooleanField(_('requester confirmed'), default=False)

    consultant_confirmed = models.BooleanField(_('consultant confirmed'), default=False)

    meeting_reference = models.CharField(
        _('meeting reference'),
        max_length=255,
        blank=True,
        default='',
        help_text=_('Identifier returned by the external meeting provider')
    )

    cancelled_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='cancelled_requests',
    )

    cancelled_at = models.DateTimeField(_('cancelled at'), null=True, blank=True)

    cancellation_reason = models.CharField(
        _('cancellation reason'),
        max_length=500,
        blank=True,
        default='',
    )

    created_at = models.DateTimeField(_('created at'), auto_now_add=True)

    updated_at = models.DateTimeField(_('updated at'), auto_now=True)

    class Meta:
        verbose_name = _('consultation request')
        verbose_name_plural = _('consultation requests')
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status'], name='core_consul_status_9d8e1f_idx'),
            models.Index(fields=['requester'], name='core_consul_request_5a7b3c_idx'),
            models.Index(fields=['agreed_time'], name='core_consul_agreed__2c6d4e_idx'),
        ]
        constraints = [
            models.CheckConstraint(
                condition=(
                    models.Q(status__in=MATCHED_REQUEST_STATUSES, matched_consultant__isnull=False)
                    | (
                        ~models.Q(status__in=MATCHED_REQUEST_STATUSES)
                        & models.Q(matched_consultant__isnull=True)
                    )
                ),
                name='matched_consultant_follows_status'
            ),
        ]

    def __str__(self):
        return f"Request #{self.pk} by {self.requester.email} ({self.status})"

    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    def party_role(self, user):
        """
        Return the role a user plays on this request, or None.

        The requester is a party from submission on; the consultant only while
        matched.
        """
        if user is None or user.pk is None:
            return None
        if user.pk == self.requester_id:
            return self.ROLE_REQUESTER
        if self.matched_consultant_id and self.matched_consultant.user_id == user.pk:
            return self.ROLE_CONSULTANT
        return None

    def can_transition_to(self, new_status):
        """
        Validate if the request can move to a new status.

        Returns:
            tuple: (is_valid: bool, error_message: str or None)
        """
        if new_status not in self.VALID_TRANSITIONS:
            return False, f'Unknown status: {new_status}.'

        if self.status in self.TERMINAL_STATUSES:
            return False, f'Cannot modify a {self.status} request.'

        if new_status in self.VALID_TRANSITIONS.get(self.status, []):
            return True, None

        return False, f'Invalid status transition from {self.status} to {new_status}.'

    def remaining_shuffles(self, max_shuffles):
        return max(0, max_shuffles - self.shuffle_count)


class ConsultantInvitation(models.Model):
    """
    Offer of one request to one consultant.

    pending -> accepted | declined | expired. The three outcomes are terminal
    and the row is never changed again once it has left pending. At most one
    invitation per request may be accepted; a partial unique index backs this
    up on databases that support conditional constraints.
    """

    STATUS_PENDING = 'pending'
    STATUS_ACCEPTED = 'accepted'
    STATUS_DECLINED = 'declined'
    STATUS_EXPIRED = 'expired'

    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_ACCEPTED, 'Accepted'),
        (STATUS_DECLINED, 'Declined'),
        (STATUS_EXPIRED, 'Expired'),
    ]

    consultation_request = models.ForeignKey(
        ConsultationRequest,
        on_delete=models.CASCADE,
        related_name='invitations',
    )

    consultant = models.ForeignKey(
        Consultant,
        on_delete=models.CASCADE,
        related_name='invitations',
    )

    invited_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='sent_invitations',
        help_text=_('Operator who sent the invitation; empty for automated matching')
    )

    status = models.CharField(
        _('status'),
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_PENDING,
    )

    is_surge = models.BooleanField(_('surge'), default=False)

    surge_multiplier = models.DecimalField(
        _('surge multiplier'),
        max_digits=4,
        decimal_places=2,
        default=Decimal('1.00'),
    )

    invited_at = models.DateTimeField(_('invited at'))

    expires_at = models.DateTimeField(_('expires at'))

    responded_at = models.DateTimeField(_('responded at'), null=True, blank=True)

    decline_reason = models.CharField(
        _('decline reason'),
        max_length=500,
        blank=True,
        default='',
    )

    proposed_time = models.DateTimeField(_('proposed time'), null=True, blank=True)

    proposal_message = models.CharField(
        _('proposal message'),
        max_length=500,
        blank=True,
        default='',
    )

    class Meta:
        verbose_name = _('consultant invitation')
        verbose_name_plural = _('consultant invitations')
        ordering = ['invited_at', 'id']
        indexes = [
            models.Index(fields=['status', 'expires_at'], name='core_consul_status_e3f1a2_idx'),
            models.Index(fields=['consultation_request', 'status'], name='core_consul_consult_7c2b9d_idx'),
            models.Index(fields=['consultant', 'status'], name='core_consul_consult_1f4e8a_idx'),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=['consultation_request', 'consultant'],
                condition=models.Q(status='pending'),
                name='unique_pending_invitation_per_consultant'
            ),
            models.UniqueConstraint(
                fields=['consultation_request'],
                condition=models.Q(status='accepted'),
                name='single_accepted_invitation_per_request'
            ),
        ]

    def __str__(self):
        return f"Invitation #{self.pk} for request #{self.consultation_request_id} ({self.status})"

    def is_pending(self):
        return self.status == self.STATUS_PENDING

    def can_respond(self, now=None):
        """Pending and not past its expiry instant."""
        return self.is_pending() and (now or timezone.now()) < self.expires_at


class Consultation(models.Model):
    """
    Billable session created once a request is scheduled.

    Tokens are charged per started minute at token_rate_per_minute when the
    session completes. tokens_refunded tracks refunds so a session is never
    refunded twice.
    """

    STATUS_SCHEDULED = 'scheduled'
    STATUS_IN_PROGRESS = 'in_progress'
    STATUS_COMPLETED = 'completed'
    STATUS_CANCELLED = 'cancelled'
    STATUS_NO_SHOW = 'no_show'

    STATUS_CHOICES = [
        (STATUS_SCHEDULED, 'Scheduled'),
        (STATUS_IN_PROGRESS, 'In progress'),
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_CANCELLED, 'Cancelled'),
        (STATUS_NO_SHOW, 'No show'),
    ]

    consultation_request = models.OneToOneField(
        ConsultationRequest,
        on_delete=models.CASCADE,
        related_name='session',
    )

    requester = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='sessions',
    )

    consultant = models.ForeignKey(
        Consultant,
        on_delete=models.PROTECT,
        related_name='sessions',
    )

    status = models.CharField(
        _('status'),
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_SCHEDULED,
    )

    scheduled_at = models.DateTimeField(_('scheduled at'))

    started_at = models.DateTimeField(_('started at'), null=True, blank=True)

    ended_at = models.DateTimeField(_('ended at'), null=True, blank=True)

    duration_minutes = models.PositiveIntegerField(_('duration in minutes'), null=True, blank=True)

    token_rate_per_minute = models.DecimalField(
        _('token rate per minute'),
        max_digits=6,
        decimal_places=2,
        default=Decimal('1.00'),
        validators=[MinValueValidator(Decimal('0.00'))],
    )

    tokens_charged = models.PositiveIntegerField(_('tokens charged'), default=0)

    tokens_refunded = models.PositiveIntegerField(_('tokens refunded'), default=0)

    user_rating = models.PositiveSmallIntegerField(
        _('user rating'),
        null=True,
        blank=True,
        validators=[
            MinValueValidator(1, message=_('Rating must be at least 1.')),
            MaxValueValidator(5, message=_('Rating cannot exceed 5.'))
        ],
    )

    user_feedback = models.TextField(_('user feedback'), blank=True, default='')

    created_at = models.DateTimeField(_('created at'), auto_now_add=True)

    updated_at = models.DateTimeField(_('updated at'), auto_now=True)

    class Meta:
        verbose_name = _('consultation session')
        verbose_name_plural = _('consultation sessions')
        ordering = ['-scheduled_at']
        indexes = [
            models.Index(fields=['consultant', 'status'], name='core_consul_consult_9a3d5b_idx'),
            models.Index(fields=['requester', 'status'], name='core_consul_request_8e2f6c_idx'),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(tokens_refunded__lte=models.F('tokens_charged')),
                name='session_refund_not_above_charge'
            ),
        ]

    def __str__(self):
        return f"Session for request #{self.consultation_request_id} ({self.status})"

    def calculate_tokens_to_charge(self):
        """Tokens owed for the recorded duration, rounded up to whole tokens."""
        if not self.duration_minutes:
            return 0
        amount = Decimal(self.duration_minutes) * self.token_rate_per_minute
        return int(amount.to_integral_value(rounding=ROUND_CEILING))

    def refundable_tokens(self):
        return self.tokens_charged - self.tokens_refunded


class TokenPackage(models.Model):
    """Purchasable bundle of tokens."""

    name = models.CharField(_('name'), max_length=100)

    token_amount = models.PositiveIntegerField(
        _('token amount'),
        validators=[MinValueValidator(1)],
    )

    price = models.DecimalField(
        _('price'),
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.00'))],
    )

    is_active = models.BooleanField(_('active'), default=True)

    created_at = models.DateTimeField(_('created at'), auto_now_add=True)

    class Meta:
        verbose_name = _('token package')
        verbose_name_plural = _('token packages')
        ordering = ['price']

    def __str__(self):
        return f"{self.name} ({self.token_amount} tokens)"


class TokenTransaction(models.Model):
    """
    Append-only ledger entry.

    amount is signed (negative for deductions) and balance_after is the
    user's balance right after this entry. Replaying a user's entries in id
    order must reproduce every balance_after and end at User.tokens_balance.
    """

    KIND_PURCHASE = 'purchase'
    KIND_DEDUCTION = 'deduction'
    KIND_REFUND = 'refund'
    KIND_BONUS = 'bonus'
    KIND_ADJUSTMENT = 'adjustment'

    KIND_CHOICES = [
        (KIND_PURCHASE, 'Purchase'),
        (KIND_DEDUCTION, 'Deduction'),
        (KIND_REFUND, 'Refund'),
        (KIND_BONUS, 'Bonus'),
        (KIND_ADJUSTMENT, 'Adjustment'),
    ]

    CREDIT_KINDS = (KIND_PURCHASE, KIND_REFUND, KIND_BONUS, KIND_ADJUSTMENT)

    user = models.ForeignKey(
        User,
        on_delete=models.PROTECT,
        related_name='token_transactions',
    )

    kind = models.CharField(_('kind'), max_length=20, choices=KIND_CHOICES)

    amount = models.IntegerField(_('amount'))

    balance_after = models.PositiveIntegerField(_('balance after'))

    description = models.CharField(_('description'), max_length=255, blank=True, default='')

    token_package = models.ForeignKey(
        TokenPackage,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='transactions',
    )

    consultation = models.ForeignKey(
        Consultation,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='token_transactions',
    )

    consultation_request = models.ForeignKey(
        ConsultationRequest,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='token_transactions',
    )

    external_reference = models.CharField(
        _('external reference'),
        max_length=255,
        blank=True,
        default='',
        help_text=_('Payment provider reference for purchases')
    )

    created_at = models.DateTimeField(_('created at'), auto_now_add=True)

    class Meta:
        verbose_name = _('token transaction')
        verbose_name_plural = _('token transactions')
        ordering = ['id']
        indexes = [
            models.Index(fields=['user', 'id'], name='core_tokent_user_id_4d7a1e_idx'),
            models.Index(fields=['kind'], name='core_tokent_kind_6b9c3f_idx'),
        ]
        constraints = [
            models.CheckConstraint(
                condition=~models.Q(amount=0),
                name='token_transaction_amount_non_zero'
            ),
            models.UniqueConstraint(
                fields=['external_reference'],
                condition=models.Q(kind='purchase') & ~models.Q(external_reference=''),
                name='token_transaction_unique_purchase_reference'
            ),
        ]

    def __str__(self):
        return f"{self.kind} {self.amount:+d} for {self.user_id} (balance {self.balance_after})"

    def save(self, *args, **kwargs):
        """
        Insert only. Ledger entries are never edited.

        Raises:
            ValidationError: If called on an existing entry
        """
        if not self._state.adding:
            raise ValidationError(_('Token transactions are append-only and cannot be modified.'))
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError(_('Token transactions are append-only and cannot be deleted.'))
