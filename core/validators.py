"""
Custom validators for consultation models.
"""

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from django.core.exceptions import ValidationError


MAX_TAG_LENGTH = 50


def validate_technology_tags(value):
    """
    Validate a list of technology tags.
    
    Tags must be non-empty strings of at most 50 characters. Comparison
    elsewhere is case-insensitive, so tags that only differ by case count as
    duplicates.
    
    Args:
        value: List of tag strings
        
    Raises:
        ValidationError: If the value is not a list of valid, distinct tags
    """
    if not isinstance(value, (list, tuple)):
        raise ValidationError(
            'Technology tags must be a list of strings.',
            code='invalid_tags_type'
        )
    
    seen = set()
    for tag in value:
        if not isinstance(tag, str) or not tag.strip():
            raise ValidationError(
                'Technology tags must be non-empty strings.',
                code='invalid_tag'
            )
        if len(tag.strip()) > MAX_TAG_LENGTH:
            raise ValidationError(
                f'Technology tags cannot exceed {MAX_TAG_LENGTH} characters.',
                code='tag_too_long'
            )
        key = tag.strip().lower()
        if key in seen:
            raise ValidationError(
                f'Duplicate technology tag: {tag.strip()}.',
                code='duplicate_tag'
            )
        seen.add(key)


def validate_timezone_name(value):
    """
    Validate an IANA timezone name such as 'Europe/Berlin'.
    
    Raises:
        ValidationError: If the timezone is unknown
    """
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        raise ValidationError(
            f'Unknown timezone: {value}.',
            code='invalid_timezone'
        )
