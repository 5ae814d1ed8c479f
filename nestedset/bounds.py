"""
Arithmetic on ``(lft, rgt)`` bound pairs.

Every function accepts any object carrying ``lft`` and ``rgt`` attributes
(a model instance, a planner snapshot...) and never touches the database.
"""


def is_valid_bounds(lft, rgt):
    """:returns: ``True`` if the pair can describe a node."""
    return lft is not None and rgt is not None and rgt > lft


def is_descendant_interval(parent, child):
    """
    :returns: ``True`` if the interval of ``child`` is strictly contained in
        the interval of ``parent``.
    """
    return parent.lft < child.lft and child.rgt < parent.rgt


def bounds_overlap(a, b):
    """
    :returns: ``True`` if the two intervals partially overlap, which never
        happens in a valid tree.
    """
    return (a.lft < b.lft < a.rgt < b.rgt) or (b.lft < a.lft < b.rgt < a.rgt)


def depth_of(ancestor_chain_length):
    """The root sits at depth 0, every other node one below its parent."""
    return ancestor_chain_length


def subtree_width(node):
    """:returns: The number of bound values used by the node and its subtree."""
    return node.rgt - node.lft + 1


def descendant_count(node):
    return (node.rgt - node.lft - 1) // 2
