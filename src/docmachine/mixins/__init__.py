"""
Built-in mixins for docmachine.

Provides common functionality that can be mixed into models.
"""

from docmachine.mixins.timestamp import TimestampMixin

__all__ = [
    'TimestampMixin',
]
