"""
Custom permission classes for the consultation API.

These gate endpoints by account type. Whether a user is a party to a given
request is checked by the service layer, which raises Forbidden.
"""

from rest_framework import permissions


class IsStaffUser(permissions.BasePermission):
    """
    Permission class that allows only staff users to access the endpoint.
    
    Used for operator actions: matching, direct invitations, meeting
    provisioning callbacks, payment confirmations and manual ledger entries.
    
    Usage:
        class MyView(APIView):
            permission_classes = [IsAuthenticated, IsStaffUser]
    """
    
    message = 'You do not have permission to perform this action. Staff privileges required.'
    
    def has_permission(self, request, view):
        if not request.user or not request.user.is_authenticated:
            return False
        
        return request.user.is_staff


class IsClient(permissions.BasePermission):
    """
    Permission class that allows only client accounts to access the endpoint.
    """
    
    message = 'Only client accounts can submit consultation requests.'
    
    def has_permission(self, request, view):
        if not request.user or not request.user.is_authenticated:
            return False
        
        return getattr(request.user, 'user_type', None) == 'client'


class IsConsultant(permissions.BasePermission):
    """
    Permission class that allows only users with a consultant profile.
    
    Approval is not required: pending consultants may already maintain their
    availability.
    """
    
    message = 'Only consultants can perform this action.'
    
    def has_permission(self, request, view):
        if not request.user or not request.user.is_authenticated:
            return False
        
        if getattr(request.user, 'user_type', None) != 'consultant':
            return False
        
        return hasattr(request.user, 'consultant_profile')
