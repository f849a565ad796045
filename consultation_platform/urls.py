"""
URL configuration for consultation_platform project.

The `urlpatterns` list routes URLs to views. For more information please see:
    https://docs.djangoproject.com/en/5.2/topics/http/urls/
"""
from django.urls import path
from rest_framework_simplejwt.views import (
    TokenObtainPairView,
    TokenRefreshView,
)
from core.views import (
    AcceptCounterProposalView,
    AcceptProposedTimeView,
    AttachMeetingView,
    AvailabilityView,
    CancelRequestView,
    CompleteSessionView,
    ConsultationRequestCreateView,
    ConsultationRequestDetailView,
    CounterProposalView,
    DirectInvitationView,
    InvitationResponseView,
    LedgerCreditView,
    LedgerDebitView,
    MatchAndInviteView,
    RateSessionView,
    RefundSessionView,
    ShuffleRequestView,
    StartSessionView,
    TokenBalanceView,
    TokenPurchaseView,
    TokenTransactionListView,
)


urlpatterns = [
    # Authentication
    path('api/auth/token/', TokenObtainPairView.as_view(), name='token_obtain_pair'),
    path('api/auth/token/refresh/', TokenRefreshView.as_view(), name='token_refresh'),
    
    # Consultation requests
    path('api/consultations/', ConsultationRequestCreateView.as_view(), name='consultation-create'),
    path('api/consultations/<int:pk>/', ConsultationRequestDetailView.as_view(), name='consultation-detail'),
    path('api/consultations/<int:pk>/match/', MatchAndInviteView.as_view(), name='consultation-match'),
    path('api/consultations/<int:pk>/invitations/', DirectInvitationView.as_view(), name='consultation-invite'),
    path('api/consultations/<int:pk>/counter-propose/', CounterProposalView.as_view(), name='consultation-counter-propose'),
    path('api/consultations/<int:pk>/accept-time/', AcceptProposedTimeView.as_view(), name='consultation-accept-time'),
    path('api/consultations/<int:pk>/accept-counter/', AcceptCounterProposalView.as_view(), name='consultation-accept-counter'),
    path('api/consultations/<int:pk>/cancel/', CancelRequestView.as_view(), name='consultation-cancel'),
    path('api/consultations/<int:pk>/shuffle/', ShuffleRequestView.as_view(), name='consultation-shuffle'),
    path('api/consultations/<int:pk>/meeting/', AttachMeetingView.as_view(), name='consultation-meeting'),
    path('api/consultations/<int:pk>/start/', StartSessionView.as_view(), name='consultation-start'),
    path('api/consultations/<int:pk>/complete/', CompleteSessionView.as_view(), name='consultation-complete'),
    
    # Invitations
    path('api/invitations/<int:pk>/respond/', InvitationResponseView.as_view(), name='invitation-respond'),
    
    # Sessions
    path('api/sessions/<int:pk>/rate/', RateSessionView.as_view(), name='session-rate'),
    path('api/sessions/<int:pk>/refund/', RefundSessionView.as_view(), name='session-refund'),
    
    # Consultants
    path('api/consultants/me/availability/', AvailabilityView.as_view(), name='consultant-availability'),
    
    # Tokens
    path('api/tokens/balance/', TokenBalanceView.as_view(), name='token-balance'),
    path('api/tokens/transactions/', TokenTransactionListView.as_view(), name='token-transactions'),
    path('api/tokens/purchase/', TokenPurchaseView.as_view(), name='token-purchase'),
    path('api/tokens/credit/', LedgerCreditView.as_view(), name='token-credit'),
    path('api/tokens/debit/', LedgerDebitView.as_view(), name='token-debit'),
]
