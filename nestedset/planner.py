"""
Bounds arithmetic for inserting, moving and deleting nodes.

Nothing in here talks to the database: the plans describe how every stored
bound value has to change, and :mod:`nestedset.handlers` turns them into
bulk ``UPDATE`` statements.
"""

from django.utils.translation import gettext as _

from nestedset.bounds import is_descendant_interval, subtree_width
from nestedset.exceptions import InvalidMoveError, InvalidPosition

#: Positions accepted by :meth:`NS_Node.move`, relative to the target node.
POSITIONS = ("last-child", "first-child", "left", "right")
CHILD_POSITIONS = ("last-child", "first-child")

#: Width of a brand new leaf.
LEAF_WIDTH = 2


def check_position(pos):
    if pos not in POSITIONS:
        raise InvalidPosition(_("Invalid relative position: %s") % (pos,))
    return pos


def destination(pos, target):
    """
    :returns: The bound value before which the incoming interval is opened,
        expressed in the numbering that exists before the mutation.
    """
    check_position(pos)
    return {
        "last-child": target.rgt,
        "first-child": target.lft + 1,
        "left": target.lft,
        "right": target.rgt + 1,
    }[pos]


def destination_depth(pos, target):
    if pos in CHILD_POSITIONS:
        return target.depth + 1
    return target.depth


def validate_target(pos, target, node=None):
    """
    Rejects positions that would break the tree before anything is written.

    :param node: the node being moved, ``None`` for an insertion.
    :raise InvalidMoveError: when the target is the node itself, one of its
        descendants, or a root and a sibling position is requested.
    """
    check_position(pos)
    if pos not in CHILD_POSITIONS and target.lft == 1:
        raise InvalidMoveError(_("A root node can't have siblings."))
    if node is not None and (
        node.lft == target.lft or is_descendant_interval(node, target)
    ):
        raise InvalidMoveError(_("Can't move node to a descendant."))


class GapPlan:
    """
    Shifts every bound at or beyond ``position`` by ``height``.

    A positive height opens a gap for an incoming subtree, a negative one
    closes the gap left by a deleted subtree.
    """

    def __init__(self, position, height):
        self.position = position
        self.height = height

    @classmethod
    def for_insert(cls, position):
        return cls(position, LEAF_WIDTH)

    @classmethod
    def for_delete(cls, node):
        return cls(node.rgt + 1, -subtree_width(node))

    def shift(self, value):
        if value >= self.position:
            return value + self.height
        return value

    def apply(self, lft, rgt):
        return self.shift(lft), self.shift(rgt)

    def __repr__(self):
        return "<GapPlan position=%d height=%d>" % (self.position, self.height)


class MovePlan:
    """
    Moves the subtree ``[lft, rgt]`` so that it starts right before
    ``position``.

    Closing the old gap and opening the new one are folded into a single
    signed delta per bound:

    * bounds inside the subtree move by ``subtree_delta``
    * bounds between the old and the new location move by ``between_delta``
      (one subtree width, towards the old location)
    * everything else stays put
    """

    def __init__(self, lft, rgt, position, depth_delta=0):
        if lft < position <= rgt:
            raise InvalidMoveError(_("Can't move node to a descendant."))
        self.lft = lft
        self.rgt = rgt
        self.position = position
        self.depth_delta = depth_delta
        self.width = rgt - lft + 1

        # the affected range, in the numbering before the move
        self.start = min(lft, position)
        self.end = max(rgt, position - 1)
        distance = self.end - self.start + 1 - self.width

        if position > lft:
            self.subtree_delta = distance
            self.between_delta = -self.width
        else:
            self.subtree_delta = -distance
            self.between_delta = self.width

    @property
    def is_noop(self):
        return self.position in (self.lft, self.rgt + 1) and not self.depth_delta

    def in_subtree(self, value):
        return self.lft <= value <= self.rgt

    def shift(self, value):
        if self.in_subtree(value):
            return value + self.subtree_delta
        if self.start <= value <= self.end:
            return value + self.between_delta
        return value

    def apply(self, lft, rgt):
        return self.shift(lft), self.shift(rgt)

    def new_bounds(self):
        """:returns: ``(lft, rgt)`` of the moved node once the plan is applied."""
        return self.lft + self.subtree_delta, self.rgt + self.subtree_delta

    def __repr__(self):
        return "<MovePlan [%d, %d] -> %d subtree%+d between%+d depth%+d>" % (
            self.lft,
            self.rgt,
            self.position,
            self.subtree_delta,
            self.between_delta,
            self.depth_delta,
        )


def plan_move(node, target, pos):
    """
    Builds the :class:`MovePlan` that puts ``node`` (and its subtree) at
    ``pos`` relative to ``target``.

    :returns: A ``(plan, new_depth)`` tuple.
    """
    validate_target(pos, target, node)
    new_depth = destination_depth(pos, target)
    plan = MovePlan(
        node.lft, node.rgt, destination(pos, target), new_depth - node.depth
    )
    return plan, new_depth


def plan_insert(target, pos):
    """
    Builds the :class:`GapPlan` that makes room for a new leaf at ``pos``
    relative to ``target``.

    :returns: A ``(plan, lft, rgt, depth)`` tuple describing the gap and the
        bounds the new leaf receives.
    """
    validate_target(pos, target)
    position = destination(pos, target)
    return (
        GapPlan.for_insert(position),
        position,
        position + LEAF_WIDTH - 1,
        destination_depth(pos, target),
    )
