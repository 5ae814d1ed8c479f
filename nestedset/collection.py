"""Rebuilding parent/child relations from flat lists of nodes"""


def to_dict(nodes):
    """:returns: A dictionary of the nodes keyed by primary key."""
    return {node.pk: node for node in nodes}


def to_tree(nodes, root=None):
    """
    Rebuilds the hierarchy of a list of nodes in memory, without queries.

    Every node gets a ``tree_children`` list holding its children among
    ``nodes``, in tree order.

    :param root: the node (or its primary key) the returned nodes hang from.
        Defaults to the parent of the left-most node.
    :returns: The top-level nodes.

    A node whose parent is missing from ``nodes`` is dropped together with
    its whole subtree, even if its descendants were part of the list. This
    keeps the children of soft deleted or filtered out nodes from showing
    up as if they were top-level.
    """
    nodes = sorted(nodes, key=lambda node: node.lft)
    if not nodes:
        return []

    if root is None:
        root_id = nodes[0].parent_id
    else:
        root_id = getattr(root, "pk", root)

    dictionary = to_dict(nodes)
    for node in nodes:
        node.tree_children = []

    tree = []
    for node in nodes:
        if node.parent_id == root_id:
            tree.append(node)
        elif node.parent_id in dictionary:
            dictionary[node.parent_id].tree_children.append(node)
    return tree


def to_flat_tree(nodes, root=None):
    """
    :returns: The nodes kept by :func:`to_tree`, flattened depth first.
    """
    flat = []
    stack = list(reversed(to_tree(nodes, root)))
    while stack:
        node = stack.pop()
        flat.append(node)
        stack.extend(reversed(node.tree_children))
    return flat
