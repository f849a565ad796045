"""
Runtime configuration for the consultation core.

Values come from the ``CONSULTATION`` dict in Django settings and fall back to
the defaults below. They are read on every call so ``override_settings`` works
in tests.
"""

from decimal import Decimal

from django.conf import settings


DEFAULTS = {
    'INVITATION_WINDOW_HOURS': 24,
    'MAX_SHUFFLES': 3,
    'SURGE_MULTIPLIER': Decimal('1.20'),
    'PER_TAG_POINTS': 25,
    'SCORE_CAPS': {
        'technology': 50,
        'availability': 20,
        'rating': 20,
        'experience': 10,
    },
    'PRIORITY_BONUS': 100,
    'INVITATION_FANOUT': 3,
    'SUBMISSION_FEE': 5,
    'MIN_PROBLEM_LENGTH': 20,
    'MAX_PROPOSAL_ROUNDS': 5,
    'TOKEN_RATE_PER_MINUTE': Decimal('1.00'),
    'SWEEP_INTERVAL_MINUTES': 60,
    'AUTO_MATCH_INTERVAL_MINUTES': 5,
}


def get_setting(name):
    """
    Return a consultation setting, falling back to its default.
    
    SCORE_CAPS is merged key by key so a project can override a single cap.
    
    Raises:
        KeyError: If the name is not a known consultation setting
    """
    if name not in DEFAULTS:
        raise KeyError(f'Unknown consultation setting: {name}')
    
    configured = getattr(settings, 'CONSULTATION', {}) or {}
    value = configured.get(name, DEFAULTS[name])
    
    if name == 'SCORE_CAPS':
        caps = dict(DEFAULTS['SCORE_CAPS'])
        caps.update(value or {})
        return caps
    return value
