"""
Handlers applying structural changes to a Nested Sets tree.

Every handler runs its whole read-plan-write sequence inside one
``transaction.atomic()`` block: the rows of the tree are locked, the bounds
of the nodes involved are read again, the plan from :mod:`nestedset.planner`
is applied with bulk ``UPDATE`` statements and finally the node row itself
is written. Any error rolls everything back.
"""

import logging

from django.conf import settings
from django.db import router, transaction
from django.db.models import Case, F, Q, When
from django.utils.translation import gettext as _

from nestedset import planner
from nestedset.bounds import descendant_count
from nestedset.exceptions import (
    ConsistencyError,
    InvalidMoveError,
    NotFoundError,
    StaleNodeError,
)
from nestedset.query import get_base_model_class
from nestedset.signals import node_moved

logger = logging.getLogger("nestedset")

TREE_FIELDS = ("lft", "rgt", "depth", "parent")


def get_lock_tree():
    return getattr(settings, "NESTEDSET_LOCK_TREE", True)


def get_stale_nodes_policy():
    return getattr(settings, "NESTEDSET_STALE_NODES", "raise")


class NS_Handler:
    def __init__(self, node, save_kwargs=None):
        self.node = node
        self.node_cls = get_base_model_class(node.__class__)
        self.using = router.db_for_write(self.node_cls, instance=node)
        self.save_kwargs = save_kwargs or {}

    def process(self):
        with transaction.atomic(using=self.using):
            return self.run()

    def run(self):
        raise NotImplementedError

    def get_queryset(self, scope):
        return self.node_cls._base_manager.using(self.using).filter(**scope)

    def get_field(self, name):
        return self.node_cls._meta.get_field(name)

    def lock_tree(self, scope):
        """Serializes structural changes made to the same tree."""
        if get_lock_tree():
            # the locks are taken when the query is evaluated
            list(
                self.get_queryset(scope)
                .select_for_update()
                .order_by("lft")
                .values_list("pk", flat=True)
            )

    def read_row(self, node):
        row = (
            self.node_cls._base_manager.using(self.using)
            .filter(pk=node.pk)
            .values(
                "lft", "rgt", "depth", "parent_id", *self.node_cls.get_scope_attnames()
            )
            .first()
        )
        if row is None:
            raise NotFoundError(
                _("Node %(pk)s does not exist anymore.") % {"pk": node.pk}
            )
        return row

    def refresh_target(self, target):
        """
        Reloads the bounds of the target node. Targets are always read inside
        the transaction, so the same instance can be reused as the target of
        several mutations in a row.
        """
        row = self.read_row(target)
        target.lft = row["lft"]
        target.rgt = row["rgt"]
        target.depth = row["depth"]
        target.parent_id = row["parent_id"]
        target._set_tree_snapshot()

    def check_source(self, node):
        """
        Compares the bounds cached in the node being changed with the stored
        row.

        :raise StaleNodeError: when they differ, unless the
            ``NESTEDSET_STALE_NODES`` setting is ``"refresh"``.
        :raise InvalidMoveError: when the scope fields of the node were
            changed, nodes never leave their tree.
        """
        row = self.read_row(node)
        if any(
            row[attname] != value for attname, value in node.get_scope_filter().items()
        ):
            raise InvalidMoveError(
                _("Node %(pk)s can't be moved to another tree.") % {"pk": node.pk}
            )
        fresh = (row["lft"], row["rgt"], row["parent_id"])
        snapshot = node.get_tree_snapshot()
        if snapshot is not None and snapshot != fresh:
            if get_stale_nodes_policy() != "refresh":
                raise StaleNodeError(
                    _(
                        "Node %(pk)s was changed since it was loaded, "
                        "reload it before moving or deleting it."
                    )
                    % {"pk": node.pk}
                )
            logger.warning('Refreshing stale node: "%s" id=%s', str(node), node.pk)
        # the parent is left alone, it may hold a reparenting request
        node.lft = row["lft"]
        node.rgt = row["rgt"]
        node.depth = row["depth"]
        node._tree_snapshot = fresh

    def apply_gap(self, scope, plan):
        """
        Shifts every bound at or beyond ``plan.position`` with a single
        ``UPDATE``.

        :returns: The number of rows changed.
        """
        position, height = plan.position, plan.height
        logger.debug("Applying %r", plan)
        return (
            self.get_queryset(scope)
            .filter(Q(lft__gte=position) | Q(rgt__gte=position))
            .update(
                lft=Case(
                    When(lft__gte=position, then=F("lft") + height),
                    default=F("lft"),
                    output_field=self.get_field("lft"),
                ),
                rgt=Case(
                    When(rgt__gte=position, then=F("rgt") + height),
                    default=F("rgt"),
                    output_field=self.get_field("rgt"),
                ),
            )
        )

    def apply_move(self, scope, plan):
        """
        Moves a subtree and the nodes between its old and new location with a
        single ``UPDATE``, so that no intermediate numbering is ever stored.
        """
        logger.debug("Applying %r", plan)

        def shifted(field):
            return Case(
                When(
                    **{
                        "%s__range" % field: (plan.lft, plan.rgt),
                        "then": F(field) + plan.subtree_delta,
                    }
                ),
                When(
                    **{
                        "%s__range" % field: (plan.start, plan.end),
                        "then": F(field) + plan.between_delta,
                    }
                ),
                default=F(field),
                output_field=self.get_field(field),
            )

        values = {}
        if plan.depth_delta:
            # mysql evaluates the SET clauses left to right, the depth must be
            # computed while lft still holds the old bounds
            values["depth"] = Case(
                When(
                    lft__range=(plan.lft, plan.rgt),
                    then=F("depth") + plan.depth_delta,
                ),
                default=F("depth"),
                output_field=self.get_field("depth"),
            )
        values["lft"] = shifted("lft")
        values["rgt"] = shifted("rgt")

        return (
            self.get_queryset(scope)
            .filter(
                Q(lft__range=(plan.start, plan.end))
                | Q(rgt__range=(plan.start, plan.end))
            )
            .update(**values)
        )

    def check_subtree(self, scope, node):
        """
        :raise ConsistencyError: when the stored subtree of ``node`` doesn't
            hold the number of rows its bounds claim.
        """
        subtree = self.get_queryset(scope).filter(lft__gte=node.lft, rgt__lte=node.rgt)
        expected = descendant_count(node) + 1
        found = subtree.count()
        if found != expected:
            raise ConsistencyError(
                _(
                    "The subtree of node %(pk)s holds %(found)d rows instead "
                    "of %(expected)d."
                )
                % {"pk": node.pk, "found": found, "expected": expected}
            )
        return subtree

    def save_row(self, **defaults):
        kwargs = dict(defaults, **self.save_kwargs)
        if kwargs.get("force_insert"):
            kwargs.pop("update_fields", None)
        elif kwargs.get("update_fields") is not None:
            kwargs["update_fields"] = set(kwargs["update_fields"]).union(TREE_FIELDS)
            kwargs.pop("force_update", None)
        self.node._save_tree_row(**kwargs)
        self.node._set_tree_snapshot()


class NS_AddRootHandler(NS_Handler):
    def run(self):
        node = self.node
        scope = node.get_scope_filter()
        self.lock_tree(scope)

        if self.get_queryset(scope).exists():
            raise InvalidMoveError(_("The tree already has a root node."))

        node.lft, node.rgt, node.depth = 1, planner.LEAF_WIDTH, 0
        node.parent = None
        self.save_row(force_insert=True)
        logger.info('Root node added: "%s" id=%s', str(node), node.pk)
        return node


class NS_InsertHandler(NS_Handler):
    def __init__(self, node, target, pos, save_kwargs=None):
        super().__init__(node, save_kwargs)
        self.target = target
        self.pos = pos

    def run(self):
        node, target = self.node, self.target
        scope = target.get_scope_filter()
        self.lock_tree(scope)
        self.refresh_target(target)

        gap, lft, rgt, depth = planner.plan_insert(target, self.pos)
        if not self.apply_gap(scope, gap):
            raise ConsistencyError(
                _("Making room next to node %(pk)s didn't update any row.")
                % {"pk": target.pk}
            )
        target.lft, target.rgt = gap.apply(target.lft, target.rgt)
        target._set_tree_snapshot()

        # the new node lives in the tree of its target
        for attname, value in scope.items():
            setattr(node, attname, value)
        node.lft, node.rgt, node.depth = lft, rgt, depth
        if self.pos in planner.CHILD_POSITIONS:
            node.parent = target
        else:
            node.parent_id = target.parent_id
        self.save_row(force_insert=True)

        logger.info(
            'Node added: "%s" id=%s %s of id=%s',
            str(node),
            node.pk,
            self.pos,
            target.pk,
        )
        return node


class NS_MoveHandler(NS_Handler):
    def __init__(self, node, target, pos, save_kwargs=None):
        super().__init__(node, save_kwargs)
        self.target = target
        self.pos = pos

    def run(self):
        node, target = self.node, self.target
        scope = node.get_scope_filter()

        if target is None:
            return self.move_to_root(scope)

        if node.pk == target.pk:
            raise InvalidMoveError(_("Can't move node to a descendant."))
        if target.get_scope_filter() != scope:
            raise InvalidMoveError(_("Nodes must belong to the same tree."))

        self.lock_tree(scope)
        self.check_source(node)
        self.refresh_target(target)

        plan, new_depth = planner.plan_move(node, target, self.pos)
        if not plan.is_noop:
            self.check_subtree(scope, node)
            self.apply_move(scope, plan)
            target.lft, target.rgt = plan.apply(target.lft, target.rgt)
            target._set_tree_snapshot()
            node.lft, node.rgt = plan.new_bounds()
        node.depth = new_depth
        if self.pos in planner.CHILD_POSITIONS:
            node.parent = target
        else:
            node.parent_id = target.parent_id
        self.save_row(force_update=True)

        logger.info(
            'Node moved: "%s" id=%s %s of id=%s',
            str(node),
            node.pk,
            self.pos,
            target.pk,
        )
        transaction.on_commit(
            lambda: node_moved.send(
                sender=node.__class__, instance=node, target=target, position=self.pos
            ),
            using=self.using,
        )
        return node

    def move_to_root(self, scope):
        node = self.node
        self.lock_tree(scope)
        self.check_source(node)
        if node.get_tree_snapshot()[2] is not None:
            raise InvalidMoveError(_("The tree already has a root node."))
        node.parent = None
        self.save_row(force_update=True)
        return node


class NS_DeleteHandler(NS_Handler):
    def run(self):
        node = self.node
        scope = node.get_scope_filter()
        self.lock_tree(scope)
        self.check_source(node)

        subtree = self.check_subtree(scope, node)
        # Django handles this as a SELECT and then a DELETE of ids, and deals
        # with removing related objects
        deleted = subtree.delete()
        self.apply_gap(scope, planner.GapPlan.for_delete(node))

        logger.info(
            'Node deleted: "%s" id=%s with %d descendants',
            str(node),
            node.pk,
            descendant_count(node),
        )
        setattr(node, node._meta.pk.attname, None)
        return deleted
