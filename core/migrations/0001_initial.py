import decimal

import django.contrib.auth.models
import django.contrib.auth.validators
import django.core.validators
import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models

import core.validators


MATCHED_REQUEST_STATUSES = (
    'matched',
    'time_proposed',
    'time_counter_proposed',
    'scheduled',
    'ready',
    'in_progress',
)


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('auth', '0012_alter_user_first_name_max_length'),
    ]

    operations = [
        migrations.CreateModel(
            name='User',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('password', models.CharField(max_length=128, verbose_name='password')),
                ('last_login', models.DateTimeField(blank=True, null=True, verbose_name='last login')),
                ('is_superuser', models.BooleanField(default=False, help_text='Designates that this user has all permissions without explicitly assigning them.', verbose_name='superuser status')),
                ('username', models.CharField(error_messages={'unique': 'A user with that username already exists.'}, help_text='Required. 150 characters or fewer. Letters, digits and @/./+/-/_ only.', max_length=150, unique=True, validators=[django.contrib.auth.validators.UnicodeUsernameValidator()], verbose_name='username')),
                ('first_name', models.CharField(blank=True, max_length=150, verbose_name='first name')),
                ('last_name', models.CharField(blank=True, max_length=150, verbose_name='last name')),
                ('is_staff', models.BooleanField(default=False, help_text='Designates whether the user can log into this admin site.', verbose_name='staff status')),
                ('is_active', models.BooleanField(default=True, help_text='Designates whether this user should be treated as active. Unselect this instead of deleting accounts.', verbose_name='active')),
                ('date_joined', models.DateTimeField(default=django.utils.timezone.now, verbose_name='date joined')),
                ('email', models.EmailField(error_messages={'unique': 'A user with that email already exists.'}, help_text='Required. Enter a valid email address.', max_length=254, unique=True, verbose_name='email address')),
                ('user_type', models.CharField(choices=[('client', 'Client'), ('consultant', 'Consultant')], default='client', help_text='Whether the account asks for help or provides it.', max_length=10, verbose_name='user type')),
                ('tokens_balance', models.PositiveIntegerField(default=0, help_text='Current token balance. Derived from the token transaction log.', verbose_name='tokens balance')),
                ('subscription_expires_at', models.DateTimeField(blank=True, help_text='Requests from users with an active subscription are matched first.', null=True, verbose_name='subscription expires at')),
                ('created_at', models.DateTimeField(auto_now_add=True, help_text='Timestamp when the user account was created', verbose_name='created at')),
                ('updated_at', models.DateTimeField(auto_now=True, help_text='Timestamp when the user account was last updated', verbose_name='updated at')),
                ('groups', models.ManyToManyField(blank=True, help_text='The groups this user belongs to. A user will get all permissions granted to each of their groups.', related_name='user_set', related_query_name='user', to='auth.group', verbose_name='groups')),
                ('user_permissions', models.ManyToManyField(blank=True, help_text='Specific permissions for this user.', related_name='user_set', related_query_name='user', to='auth.permission', verbose_name='user permissions')),
            ],
            options={
                'verbose_name': 'user',
                'verbose_name_plural': 'users',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['email'], name='core_user_email_7ec0d5_idx'),
                    models.Index(fields=['user_type'], name='core_user_user_ty_1ba2d3_idx'),
                ],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(tokens_balance__gte=0), name='user_tokens_balance_non_negative'),
                ],
            },
            managers=[
                ('objects', django.contrib.auth.models.UserManager()),
            ],
        ),
        migrations.CreateModel(
            name='Consultant',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('specializations', models.JSONField(blank=True, default=list, help_text='Technology tags the consultant can help with', validators=[core.validators.validate_technology_tags], verbose_name='specializations')),
                ('bio', models.TextField(blank=True, default='', verbose_name='bio')),
                ('status', models.CharField(choices=[('pending', 'Pending approval'), ('approved', 'Approved'), ('suspended', 'Suspended')], default='pending', max_length=20, verbose_name='approval status')),
                ('is_available', models.BooleanField(default=False, help_text='Whether the consultant currently accepts new requests', verbose_name='available')),
                ('is_surge_available', models.BooleanField(default=False, help_text='Whether the consultant accepts surge invitations at a boosted rate', verbose_name='surge available')),
                ('rating_average', models.DecimalField(decimal_places=2, default=decimal.Decimal('0.00'), help_text='Mean rating over rated completed sessions', max_digits=3, validators=[django.core.validators.MinValueValidator(decimal.Decimal('0.00'), message='Rating cannot be negative.'), django.core.validators.MaxValueValidator(decimal.Decimal('5.00'), message='Rating cannot exceed 5.00.')], verbose_name='rating average')),
                ('completed_sessions', models.PositiveIntegerField(default=0, verbose_name='completed sessions')),
                ('approved_at', models.DateTimeField(blank=True, null=True, verbose_name='approved at')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='created at')),
                ('updated_at', models.DateTimeField(auto_now=True, verbose_name='updated at')),
                ('user', models.OneToOneField(help_text='User account of the consultant', on_delete=django.db.models.deletion.CASCADE, related_name='consultant_profile', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'consultant',
                'verbose_name_plural': 'consultants',
                'ordering': ['id'],
                'indexes': [
                    models.Index(fields=['status', 'is_available'], name='core_consul_status_4b1c2e_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='ConsultantAvailability',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('day_of_week', models.PositiveSmallIntegerField(choices=[(0, 'Sunday'), (1, 'Monday'), (2, 'Tuesday'), (3, 'Wednesday'), (4, 'Thursday'), (5, 'Friday'), (6, 'Saturday')], verbose_name='day of week')),
                ('start_time', models.TimeField(verbose_name='start time')),
                ('end_time', models.TimeField(verbose_name='end time')),
                ('timezone', models.CharField(default='UTC', max_length=64, validators=[core.validators.validate_timezone_name], verbose_name='timezone')),
                ('is_active', models.BooleanField(default=True, verbose_name='active')),
                ('consultant', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='availability_windows', to='core.consultant')),
            ],
            options={
                'verbose_name': 'availability window',
                'verbose_name_plural': 'availability windows',
                'ordering': ['consultant', 'day_of_week', 'start_time'],
            },
        ),
        migrations.CreateModel(
            name='ConsultationRequest',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('problem_description', models.TextField(verbose_name='problem description')),
                ('tech_stack', models.JSONField(default=list, help_text='Technologies the requester needs help with', validators=[core.validators.validate_technology_tags], verbose_name='technology stack')),
                ('error_logs', models.TextField(blank=True, default='', verbose_name='error logs')),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('matching', 'Matching'), ('invited', 'Invited'), ('matched', 'Matched'), ('time_proposed', 'Time proposed'), ('time_counter_proposed', 'Time counter-proposed'), ('scheduled', 'Scheduled'), ('ready', 'Ready'), ('in_progress', 'In progress'), ('completed', 'Completed'), ('cancelled', 'Cancelled')], default='pending', max_length=25, verbose_name='status')),
                ('matched_at', models.DateTimeField(blank=True, null=True, verbose_name='matched at')),
                ('excluded_consultants', models.JSONField(blank=True, default=list, help_text='Ids of consultants already tried for this request', verbose_name='excluded consultants')),
                ('shuffle_count', models.PositiveSmallIntegerField(default=0, verbose_name='shuffle count')),
                ('submission_fee', models.PositiveIntegerField(default=0, help_text='Tokens held when the request was submitted', verbose_name='submission fee')),
                ('fee_refunded_at', models.DateTimeField(blank=True, null=True, verbose_name='fee refunded at')),
                ('proposed_time', models.DateTimeField(blank=True, null=True, verbose_name='proposed time')),
                ('counter_proposed_time', models.DateTimeField(blank=True, null=True, verbose_name='counter-proposed time')),
                ('counter_proposal_reason', models.CharField(blank=True, default='', max_length=500, verbose_name='counter-proposal reason')),
                ('last_proposed_by', models.CharField(blank=True, choices=[('requester', 'Requester'), ('consultant', 'Consultant')], default='', max_length=20, verbose_name='last proposed by')),
                ('proposal_rounds', models.PositiveIntegerField(default=0, verbose_name='proposal rounds')),
                ('agreed_time', models.DateTimeField(blank=True, null=True, verbose_name='agreed time')),
                ('requester_confirmed', models.BooleanField(default=False, verbose_name='requester confirmed')),
                ('consultant_confirmed', models.BooleanField(default=False, verbose_name='consultant confirmed')),
                ('meeting_reference', models.CharField(blank=True, default='', help_text='Identifier returned by the external meeting provider', max_length=255, verbose_name='meeting reference')),
                ('cancelled_at', models.DateTimeField(blank=True, null=True, verbose_name='cancelled at')),
                ('cancellation_reason', models.CharField(blank=True, default='', max_length=500, verbose_name='cancellation reason')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='created at')),
                ('updated_at', models.DateTimeField(auto_now=True, verbose_name='updated at')),
                ('cancelled_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='cancelled_requests', to=settings.AUTH_USER_MODEL)),
                ('matched_consultant', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='matched_requests', to='core.consultant')),
                ('requester', models.ForeignKey(help_text='User asking for help', on_delete=django.db.models.deletion.CASCADE, related_name='consultation_requests', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'consultation request',
                'verbose_name_plural': 'consultation requests',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['status'], name='core_consul_status_9d8e1f_idx'),
                    models.Index(fields=['requester'], name='core_consul_request_5a7b3c_idx'),
                    models.Index(fields=['agreed_time'], name='core_consul_agreed__2c6d4e_idx'),
                ],
                'constraints': [
                    models.CheckConstraint(
                        condition=(
                            models.Q(status__in=MATCHED_REQUEST_STATUSES, matched_consultant__isnull=False)
                            | (
                                ~models.Q(status__in=MATCHED_REQUEST_STATUSES)
                                & models.Q(matched_consultant__isnull=True)
                            )
                        ),
                        name='matched_consultant_follows_status',
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name='ConsultantInvitation',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('accepted', 'Accepted'), ('declined', 'Declined'), ('expired', 'Expired')], default='pending', max_length=20, verbose_name='status')),
                ('is_surge', models.BooleanField(default=False, verbose_name='surge')),
                ('surge_multiplier', models.DecimalField(decimal_places=2, default=decimal.Decimal('1.00'), max_digits=4, verbose_name='surge multiplier')),
                ('invited_at', models.DateTimeField(verbose_name='invited at')),
                ('expires_at', models.DateTimeField(verbose_name='expires at')),
                ('responded_at', models.DateTimeField(blank=True, null=True, verbose_name='responded at')),
                ('decline_reason', models.CharField(blank=True, default='', max_length=500, verbose_name='decline reason')),
                ('proposed_time', models.DateTimeField(blank=True, null=True, verbose_name='proposed time')),
                ('proposal_message', models.CharField(blank=True, default='', max_length=500, verbose_name='proposal message')),
                ('consultation_request', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='invitations', to='core.consultationrequest')),
                ('consultant', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='invitations', to='core.consultant')),
                ('invited_by', models.ForeignKey(blank=True, help_text='Operator who sent the invitation; empty for automated matching', null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='sent_invitations', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'consultant invitation',
                'verbose_name_plural': 'consultant invitations',
                'ordering': ['invited_at', 'id'],
                'indexes': [
                    models.Index(fields=['status', 'expires_at'], name='core_consul_status_e3f1a2_idx'),
                    models.Index(fields=['consultation_request', 'status'], name='core_consul_consult_7c2b9d_idx'),
                    models.Index(fields=['consultant', 'status'], name='core_consul_consult_1f4e8a_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(condition=models.Q(status='pending'), fields=('consultation_request', 'consultant'), name='unique_pending_invitation_per_consultant'),
                    models.UniqueConstraint(condition=models.Q(status='accepted'), fields=('consultation_request',), name='single_accepted_invitation_per_request'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Consultation',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('status', models.CharField(choices=[('scheduled', 'Scheduled'), ('in_progress', 'In progress'), ('completed', 'Completed'), ('cancelled', 'Cancelled'), ('no_show', 'No show')], default='scheduled', max_length=20, verbose_name='status')),
                ('scheduled_at', models.DateTimeField(verbose_name='scheduled at')),
                ('started_at', models.DateTimeField(blank=True, null=True, verbose_name='started at')),
                ('ended_at', models.DateTimeField(blank=True, null=True, verbose_name='ended at')),
                ('duration_minutes', models.PositiveIntegerField(blank=True, null=True, verbose_name='duration in minutes')),
                ('token_rate_per_minute', models.DecimalField(decimal_places=2, default=decimal.Decimal('1.00'), max_digits=6, validators=[django.core.validators.MinValueValidator(decimal.Decimal('0.00'))], verbose_name='token rate per minute')),
                ('tokens_charged', models.PositiveIntegerField(default=0, verbose_name='tokens charged')),
                ('tokens_refunded', models.PositiveIntegerField(default=0, verbose_name='tokens refunded')),
                ('user_rating', models.PositiveSmallIntegerField(blank=True, null=True, validators=[django.core.validators.MinValueValidator(1, message='Rating must be at least 1.'), django.core.validators.MaxValueValidator(5, message='Rating cannot exceed 5.')], verbose_name='user rating')),
                ('user_feedback', models.TextField(blank=True, default='', verbose_name='user feedback')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='created at')),
                ('updated_at', models.DateTimeField(auto_now=True, verbose_name='updated at')),
                ('consultation_request', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='session', to='core.consultationrequest')),
                ('consultant', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='sessions', to='core.consultant')),
                ('requester', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='sessions', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'consultation session',
                'verbose_name_plural': 'consultation sessions',
                'ordering': ['-scheduled_at'],
                'indexes': [
                    models.Index(fields=['consultant', 'status'], name='core_consul_consult_9a3d5b_idx'),
                    models.Index(fields=['requester', 'status'], name='core_consul_request_8e2f6c_idx'),
                ],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(tokens_refunded__lte=models.F('tokens_charged')), name='session_refund_not_above_charge'),
                ],
            },
        ),
        migrations.CreateModel(
            name='TokenPackage',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=100, verbose_name='name')),
                ('token_amount', models.PositiveIntegerField(validators=[django.core.validators.MinValueValidator(1)], verbose_name='token amount')),
                ('price', models.DecimalField(decimal_places=2, max_digits=10, validators=[django.core.validators.MinValueValidator(decimal.Decimal('0.00'))], verbose_name='price')),
                ('is_active', models.BooleanField(default=True, verbose_name='active')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='created at')),
            ],
            options={
                'verbose_name': 'token package',
                'verbose_name_plural': 'token packages',
                'ordering': ['price'],
            },
        ),
        migrations.CreateModel(
            name='TokenTransaction',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('kind', models.CharField(choices=[('purchase', 'Purchase'), ('deduction', 'Deduction'), ('refund', 'Refund'), ('bonus', 'Bonus'), ('adjustment', 'Adjustment')], max_length=20, verbose_name='kind')),
                ('amount', models.IntegerField(verbose_name='amount')),
                ('balance_after', models.PositiveIntegerField(verbose_name='balance after')),
                ('description', models.CharField(blank=True, default='', max_length=255, verbose_name='description')),
                ('external_reference', models.CharField(blank=True, default='', help_text='Payment provider reference for purchases', max_length=255, verbose_name='external reference')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='created at')),
                ('consultation', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='token_transactions', to='core.consultation')),
                ('consultation_request', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='token_transactions', to='core.consultationrequest')),
                ('token_package', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='transactions', to='core.tokenpackage')),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='token_transactions', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'token transaction',
                'verbose_name_plural': 'token transactions',
                'ordering': ['id'],
                'indexes': [
                    models.Index(fields=['user', 'id'], name='core_tokent_user_id_4d7a1e_idx'),
                    models.Index(fields=['kind'], name='core_tokent_kind_6b9c3f_idx'),
                ],
                'constraints': [
                    models.CheckConstraint(condition=~models.Q(amount=0), name='token_transaction_amount_non_zero'),
                    models.UniqueConstraint(condition=models.Q(('kind', 'purchase'), models.Q(('external_reference', ''), _negated=True)), fields=('external_reference',), name='token_transaction_unique_purchase_reference'),
                ],
            },
        ),
    ]
