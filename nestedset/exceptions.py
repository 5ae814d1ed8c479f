"""Nested set exceptions"""

from django.core.exceptions import ObjectDoesNotExist


class NestedSetError(Exception):
    """Base class for the errors raised by nestedset."""


class InvalidPosition(NestedSetError):
    """Raised when passing an invalid pos value"""


class InvalidMoveError(NestedSetError):
    """
    Raised when a node can't be placed at the requested position: the target
    is the node itself or one of its descendants, the target belongs to
    another tree, or the move would give the tree a second root.
    """


class StaleNodeError(NestedSetError):
    """
    Raised when the bounds cached in a node instance no longer match the
    stored row at the time the node is used as the source of a mutation.
    Reload the node with ``refresh_from_db()`` and retry.
    """


class ConsistencyError(NestedSetError):
    """
    Raised when a bulk bounds update touches an unexpected number of rows,
    which means the tree is corrupted. The enclosing transaction is rolled
    back.
    """


class NotFoundError(NestedSetError, ObjectDoesNotExist):
    """Raised when the source or target of a mutation no longer exists."""
