from django.db import models
from django.db.models import F, Func, IntegerField, OuterRef, Q, Subquery

from nestedset import collection


def get_base_model_class(cls):
    """
    Return the class in this model's inheritance chain which implements tree behaviour
    (i.e. the one which defines the 'lft' field). Necessary because a query like
    get_children invoked on a multiple-table-inheritance subclass needs to run
    against the base class, in order to return nodes that are not the same
    subclass as the node it started from.
    """
    return cls._meta.get_field("lft").model


class NS_NodeQuerySet(models.QuerySet):
    """
    Queryset for the nodes of a Nested Sets tree.

    Results are returned in tree order (ascending ``lft``) unless the caller
    has taken over the ordering: an explicit ``order_by()``, a slice (limit or
    offset), a grouped query or :meth:`unordered` all suppress the default.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._tree_ordering = True
        self._tree_reversed = False

    def _clone(self):
        clone = super()._clone()
        clone._tree_ordering = self._tree_ordering
        clone._tree_reversed = self._tree_reversed
        return clone

    def _wants_tree_ordering(self):
        query = self.query
        return (
            self._tree_ordering
            and query.default_ordering
            and not query.order_by
            and not query.extra_order_by
            and not query.is_sliced
            and not query.combinator
            and query.group_by is None
        )

    def _tree_order_by(self):
        return ("-lft",) if self._tree_reversed else ("lft",)

    def _with_tree_ordering(self):
        if self._wants_tree_ordering():
            return self.order_by(*self._tree_order_by())
        return self

    def _fetch_all(self):
        if self._result_cache is not None or not self._wants_tree_ordering():
            return super()._fetch_all()
        # the ordering only lives for this evaluation, clones stay unordered
        self.query.add_ordering(*self._tree_order_by())
        try:
            super()._fetch_all()
        finally:
            self.query.clear_ordering(force=True, clear_default=False)

    def iterator(self, *args, **kwargs):
        return super(NS_NodeQuerySet, self._with_tree_ordering()).iterator(
            *args, **kwargs
        )

    def first(self):
        return super(NS_NodeQuerySet, self._with_tree_ordering()).first()

    def last(self):
        return super(NS_NodeQuerySet, self._with_tree_ordering()).last()

    def unordered(self):
        """Drops the default tree ordering."""
        clone = self._chain()
        clone._tree_ordering = False
        return clone

    def reversed(self):
        """Returns nodes in descending tree order, i.e. right-most first."""
        clone = self._chain()
        clone._tree_reversed = True
        return clone

    def descendant_of_q(self, other, inclusive=False):
        q = Q(lft__gte=other.lft, rgt__lte=other.rgt, **other.get_scope_filter())

        if not inclusive:
            q &= ~Q(pk=other.pk)

        return q

    def descendant_of(self, other, inclusive=False):
        """
        This filters the QuerySet to only contain nodes that descend from the specified node.

        If inclusive is set to True, it will also contain the node itself.
        """
        return self.filter(self.descendant_of_q(other, inclusive))

    def not_descendant_of(self, other, inclusive=False):
        return self.exclude(self.descendant_of_q(other, inclusive))

    def ancestor_of_q(self, other, inclusive=False):
        q = Q(lft__lte=other.lft, rgt__gte=other.rgt, **other.get_scope_filter())

        if not inclusive:
            q &= ~Q(pk=other.pk)

        return q

    def ancestor_of(self, other, inclusive=False):
        """
        This filters the QuerySet to only contain nodes that are ancestors of the
        specified node, starting from the root.

        If inclusive is set to True, it will also include the specified node.
        """
        return self.filter(self.ancestor_of_q(other, inclusive))

    def not_ancestor_of(self, other, inclusive=False):
        return self.exclude(self.ancestor_of_q(other, inclusive))

    def child_of_q(self, other):
        return self.descendant_of_q(other) & Q(depth=other.depth + 1)

    def child_of(self, other):
        """
        This filters the QuerySet to only contain direct children of the specified node.
        """
        return self.filter(self.child_of_q(other))

    def sibling_of_q(self, other, inclusive=False):
        if other.parent_id is None:
            q = Q(parent__isnull=True, **other.get_scope_filter())
        else:
            q = Q(parent_id=other.parent_id)

        if not inclusive:
            q &= ~Q(pk=other.pk)

        return q

    def sibling_of(self, other, inclusive=False):
        """
        This filters the QuerySet to only contain nodes sharing the parent of the
        specified node.

        If inclusive is set to True, the node itself is included.
        """
        return self.filter(self.sibling_of_q(other, inclusive))

    def next_siblings(self, other):
        """Siblings placed after the specified node."""
        return self.sibling_of(other).filter(lft__gt=other.lft)

    def prev_siblings(self, other, reverse=False):
        """
        Siblings placed before the specified node.

        With ``reverse=True`` the closest sibling comes first.
        """
        qs = self.sibling_of(other).filter(lft__lt=other.lft)
        if reverse:
            qs = qs.reversed()
        return qs

    def leaves(self):
        return self.filter(rgt=F("lft") + 1)

    def without_root(self):
        return self.filter(parent__isnull=False)

    def root(self, **scope):
        """:returns: The root node of the tree selected by ``scope``, or ``None``."""
        return self.filter(parent__isnull=True, **scope).first()

    def with_depth(self, alias="computed_depth"):
        """
        Annotates every node with the number of nodes whose interval strictly
        contains its own, computed by a single correlated subquery.
        """
        base_model = get_base_model_class(self.model)
        scope = {
            attname: OuterRef(attname) for attname in base_model.get_scope_attnames()
        }
        ancestors = (
            base_model._base_manager.filter(
                lft__lt=OuterRef("lft"), rgt__gt=OuterRef("rgt"), **scope
            )
            .order_by()
            .annotate(ancestor_count=Func(F("pk"), function="COUNT"))
            .values("ancestor_count")
        )
        return self.annotate(
            **{alias: Subquery(ancestors, output_field=IntegerField())}
        )

    def to_tree(self, root=None):
        return collection.to_tree(self, root)

    def to_flat_tree(self, root=None):
        return collection.to_flat_tree(self, root)

    def to_dict(self):
        return collection.to_dict(self)

    def delete(self):
        """
        Custom delete method, will remove all descendant nodes to ensure a
        consistent tree (no orphans)

        :returns: The same ``(count, per-model counts)`` pair as Django's delete.
        """
        # we'll have to manually run through all the nodes that are going
        # to be deleted and remove nodes from the list if an ancestor is
        # already getting removed, since that would be redundant
        base_model = get_base_model_class(self.model)
        removed = []
        last = {}
        for node in self.order_by(*base_model.get_scope_attnames(), "lft"):
            scope = tuple(node.get_scope_filter().items())
            if scope in last and node.rgt < last[scope].rgt:
                # we are already removing an ancestor of this node
                continue
            last[scope] = node
            removed.append(node)

        # right-most subtrees first, so that closing their gaps never moves
        # the nodes still waiting to be removed
        deleted, rows = 0, {}
        for node in sorted(removed, key=lambda node: node.lft, reverse=True):
            count, per_model = node.delete()
            deleted += count
            for label, value in per_model.items():
                rows[label] = rows.get(label, 0) + value
        return deleted, rows

    delete.queryset_only = True
    delete.alters_data = True


class NS_NodeManager(models.Manager.from_queryset(NS_NodeQuerySet)):
    """Custom manager for nodes in a Nested Sets tree."""


class NS_SoftDeleteManager(NS_NodeManager):
    """Hides soft deleted nodes."""

    def get_queryset(self):
        return super().get_queryset().filter(deleted_at__isnull=True)
