"""
TimestampMixin for automatic created_at and updated_at tracking.

Provides automatic timestamp management for models.
"""

from datetime import datetime
from typing import Optional

from docmachine.models.fields import Field


class TimestampMixin:
    """
    Mixin that adds automatic timestamp tracking.

    Adds created_at and updated_at fields that are managed on save:
    - created_at: Set once when the record is inserted
    - updated_at: Set on insert and on every update that writes something

    Timestamps are naive UTC at millisecond precision, the way BSON stores
    them.

    Example:
        >>> class User(TimestampMixin, Model):
        ...     name: str
        >>>
        >>> user = await User.create(name="Alice")
        >>> print(user.created_at)  # Automatic timestamp
        >>> user.name = "Alice Smith"
        >>> await user.save()
        >>> print(user.updated_at)  # Updated timestamp
    """

    created_at: Optional[datetime] = Field(None, auto_now_add=True)
    updated_at: Optional[datetime] = Field(None, auto_now=True)
