"""Nested Sets Trees"""

import logging
from collections import defaultdict

from django.core import serializers
from django.db import models, router, transaction
from django.utils import timezone
from django.utils.translation import gettext as _

from nestedset import bounds, collection, planner
from nestedset.exceptions import InvalidMoveError
from nestedset.handlers import (
    TREE_FIELDS,
    NS_AddRootHandler,
    NS_DeleteHandler,
    NS_InsertHandler,
    NS_MoveHandler,
)
from nestedset.query import (
    NS_NodeManager,
    NS_SoftDeleteManager,
    get_base_model_class,
)

logger = logging.getLogger("nestedset")

ROOT = "root"


class NS_Node(models.Model):
    """
    Abstract model to create your own Nested Sets Trees.

    Nodes are placed with one of the positional methods (:meth:`append_to`,
    :meth:`prepend_to`, :meth:`after`, :meth:`before`, :meth:`make_root`)
    followed by :meth:`save`, which applies the pending change in a single
    transaction::

        node.append_to(target).save()

    Assigning ``parent`` and saving is equivalent to ``append_to(parent)``.
    """

    lft = models.PositiveIntegerField(db_index=True, editable=False)
    rgt = models.PositiveIntegerField(db_index=True, editable=False)
    depth = models.PositiveIntegerField(editable=False)
    parent = models.ForeignKey(
        "self",
        null=True,
        blank=True,
        related_name="children",
        on_delete=models.CASCADE,
    )

    #: Names of the fields telling apart independent trees stored in the
    #: same table.
    node_scope = []

    objects = NS_NodeManager()

    _pending_move = None
    _tree_snapshot = None
    _scope_snapshot = None

    class Meta:
        abstract = True
        indexes = [models.Index(fields=["lft", "rgt"], name="%(class)s_bounds")]

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        instance._set_tree_snapshot()
        return instance

    def refresh_from_db(self, using=None, fields=None, **kwargs):
        super().refresh_from_db(using=using, fields=fields, **kwargs)
        # a partial reload keeps the bounds the node was loaded with, unless
        # it covers all of them
        if (
            fields is None
            or self._tree_snapshot is None
            or {"lft", "rgt", "parent"}.issubset(fields)
        ):
            self._set_tree_snapshot()

    def _set_tree_snapshot(self):
        # deferred fields are read from __dict__ to avoid a query per node
        values = (
            self.__dict__.get("lft"),
            self.__dict__.get("rgt"),
            self.__dict__.get("parent_id"),
        )
        if None in values[:2]:
            self._tree_snapshot = None
        else:
            self._tree_snapshot = values

        scope = {
            attname: self.__dict__[attname]
            for attname in self.get_scope_attnames()
            if attname in self.__dict__
        }
        if len(scope) == len(self.node_scope):
            self._scope_snapshot = scope
        else:
            self._scope_snapshot = None

    def get_tree_snapshot(self):
        """
        :returns: The ``(lft, rgt, parent_id)`` values the node had when it was
            loaded or last changed by a tree operation, ``None`` if unknown.
        """
        return self._tree_snapshot

    @classmethod
    def get_scope_attnames(cls):
        return [cls._meta.get_field(name).attname for name in cls.node_scope]

    def get_scope_filter(self):
        """:returns: The lookups selecting the tree this node belongs to."""
        return {
            attname: getattr(self, attname) for attname in self.get_scope_attnames()
        }

    @classmethod
    def add_root(cls, instance=None, **kwargs):
        """
        Adds the root node of a tree.

        :raise InvalidMoveError: when the tree already has a root
        """
        if instance is None:
            instance = cls(**kwargs)
        instance.make_root().save()
        return instance

    @classmethod
    def get_tree(cls, parent=None):
        """
        :returns:

            A *queryset* of nodes ordered as DFS, including the parent.
            If no parent is given, the entire tree is returned.
        """
        manager = get_base_model_class(cls)._default_manager
        if parent is None:
            return manager.all()
        return manager.descendant_of(parent, inclusive=True)

    @classmethod
    def get_root_nodes(cls):
        """:returns: A queryset containing the root node of every tree."""
        return get_base_model_class(cls)._default_manager.filter(parent__isnull=True)

    @classmethod
    def load_bulk(cls, bulk_data, parent=None, keep_ids=False):
        """
        Loads a list/dictionary structure to the tree.

        :returns: A list of the added node ids.
        """
        added = []
        with transaction.atomic(using=router.db_for_write(cls)):
            # stack of nodes to analyze
            stack = [(parent, node) for node in bulk_data[::-1]]
            while stack:
                parent, node_struct = stack.pop()
                # shallow copy of the data structure so it doesn't persist...
                node_data = node_struct["data"].copy()
                if keep_ids:
                    node_data["id"] = node_struct["id"]
                node_obj = cls(**node_data)
                if parent is None:
                    node_obj.make_root()
                else:
                    node_obj.append_to(parent)
                node_obj.save()
                added.append(node_obj.pk)
                if "children" in node_struct:
                    # extending the stack with the current node as the parent of
                    # the new nodes
                    stack.extend(
                        [(node_obj, child) for child in node_struct["children"][::-1]]
                    )
        return added

    @classmethod
    def dump_bulk(cls, parent=None, keep_ids=True):
        """Dumps a tree branch to a python data structure."""
        cls = get_base_model_class(cls)
        nodes = collection.to_flat_tree(
            cls.get_tree(parent), parent.parent_id if parent else None
        )
        skip = {"parent"}.union(
            field.name for field in cls._meta.concrete_fields if not field.editable
        )
        ret, lnk = [], {}
        for node, pyobj in zip(nodes, serializers.serialize("python", nodes)):
            # django's serializer stores the attributes in 'fields'
            fields = pyobj["fields"]
            # tree fields are rebuilt by load_bulk
            for name in skip:
                fields.pop(name, None)

            newobj = {"data": fields}
            if keep_ids:
                newobj["id"] = pyobj["pk"]

            if node.parent_id in lnk:
                lnk[node.parent_id].setdefault("children", []).append(newobj)
            else:
                ret.append(newobj)
            lnk[node.pk] = newobj
        return ret

    @classmethod
    def find_problems(cls):
        """
        Checks the stored bounds of every tree.

        :returns: A dictionary of lists of node ids:

                  * ``invalid_bounds``: ``rgt`` isn't greater than ``lft``
                  * ``out_of_range``: a bound outside of ``1..2n``, ``n`` being
                    the number of nodes in the tree
                  * ``duplicates``: a bound value used twice in the same tree
                  * ``multiple_roots``: roots other than the left-most one
                  * ``missing_parent``: the parent is not in the same tree
                  * ``wrong_parent``: the parent interval doesn't contain the
                    node interval
                  * ``wrong_depth``: the depth doesn't match the parent's
                  * ``wrong_width``: the interval doesn't hold room for exactly
                    the descendants pointing to the node through ``parent``
        """
        cls = get_base_model_class(cls)
        scope_attnames = cls.get_scope_attnames()

        trees = defaultdict(list)
        for row in cls._base_manager.order_by("lft", "pk").values(
            "pk", "lft", "rgt", "depth", "parent_id", *scope_attnames
        ):
            trees[tuple(row[attname] for attname in scope_attnames)].append(row)

        problems = {
            "invalid_bounds": [],
            "out_of_range": [],
            "duplicates": [],
            "multiple_roots": [],
            "missing_parent": [],
            "wrong_parent": [],
            "wrong_depth": [],
            "wrong_width": [],
        }
        for rows in trees.values():
            by_pk = {row["pk"]: row for row in rows}
            highest = 2 * len(rows)
            used = set()
            for row in rows:
                if not bounds.is_valid_bounds(row["lft"], row["rgt"]):
                    problems["invalid_bounds"].append(row["pk"])
                if not (1 <= row["lft"] <= highest and 1 <= row["rgt"] <= highest):
                    problems["out_of_range"].append(row["pk"])
                if row["lft"] in used or row["rgt"] in used:
                    problems["duplicates"].append(row["pk"])
                used.update((row["lft"], row["rgt"]))

            roots = [row for row in rows if row["parent_id"] is None]
            problems["multiple_roots"].extend(row["pk"] for row in roots[1:])

            descendants = dict.fromkeys(by_pk, 0)
            for row in rows:
                seen = {row["pk"]}
                parent_id = row["parent_id"]
                while parent_id in by_pk and parent_id not in seen:
                    descendants[parent_id] += 1
                    seen.add(parent_id)
                    parent_id = by_pk[parent_id]["parent_id"]

            for row in rows:
                width = row["rgt"] - row["lft"] + 1
                if bounds.is_valid_bounds(row["lft"], row["rgt"]) and (
                    width != 2 * (descendants[row["pk"]] + 1)
                ):
                    problems["wrong_width"].append(row["pk"])

                if row["parent_id"] is None:
                    if row["depth"] != 0:
                        problems["wrong_depth"].append(row["pk"])
                    continue
                parent = by_pk.get(row["parent_id"])
                if parent is None:
                    problems["missing_parent"].append(row["pk"])
                elif not (parent["lft"] < row["lft"] and row["rgt"] < parent["rgt"]):
                    problems["wrong_parent"].append(row["pk"])
                elif row["depth"] != parent["depth"] + 1:
                    problems["wrong_depth"].append(row["pk"])
        return problems

    @classmethod
    def is_broken(cls):
        return any(cls.find_problems().values())

    @classmethod
    def fix_tree(cls):
        """
        Rebuilds ``lft``, ``rgt`` and ``depth`` of every node from the
        ``parent`` references, keeping the current order of siblings.

        Nodes whose parent belongs to another tree are attached to the root of
        their own tree. Extra roots become the last children of the
        left-most root.

        :returns: The number of nodes that were renumbered.
        """
        cls = get_base_model_class(cls)
        scope_attnames = cls.get_scope_attnames()
        fixed = []

        with transaction.atomic(using=router.db_for_write(cls)):
            trees = defaultdict(list)
            rows = (
                cls._base_manager.select_for_update()
                .order_by("lft", "pk")
                .values("pk", "lft", "rgt", "depth", "parent_id", *scope_attnames)
            )
            for row in rows:
                trees[tuple(row[attname] for attname in scope_attnames)].append(row)

            for rows in trees.values():
                by_pk = {row["pk"]: row for row in rows}
                children = defaultdict(list)
                roots = []
                for row in rows:
                    if row["parent_id"] is None:
                        roots.append(row)
                    elif row["parent_id"] in by_pk:
                        children[row["parent_id"]].append(row)
                for row in roots[1:]:
                    logger.warning(
                        "Attaching root id=%s to the first root of its tree", row["pk"]
                    )
                    row["reparented"] = True
                    row["parent_id"] = roots[0]["pk"]
                    children[roots[0]["pk"]].append(row)
                del roots[1:]
                for row in rows:
                    if row["parent_id"] is not None and row["parent_id"] not in by_pk:
                        row["reparented"] = True
                        if not roots:
                            row["parent_id"] = None
                            roots.append(row)
                            continue
                        logger.warning(
                            "Attaching node id=%s to the root of its tree", row["pk"]
                        )
                        row["parent_id"] = roots[0]["pk"]
                        children[roots[0]["pk"]].append(row)

                counter = 0
                stack = [(row, 0, False) for row in reversed(roots)]
                while stack:
                    row, depth, leaving = stack.pop()
                    counter += 1
                    if leaving:
                        row["new_rgt"] = counter
                        continue
                    row["new_lft"] = counter
                    row["new_depth"] = depth
                    stack.append((row, depth, True))
                    stack.extend(
                        (child, depth + 1, False)
                        for child in reversed(children[row["pk"]])
                    )

                for row in rows:
                    if "new_lft" not in row:
                        # part of a parent cycle, unreachable from a root
                        continue
                    if (row["lft"], row["rgt"], row["depth"]) != (
                        row["new_lft"],
                        row["new_rgt"],
                        row["new_depth"],
                    ) or row.get("reparented"):
                        fixed.append(
                            cls(
                                pk=row["pk"],
                                lft=row["new_lft"],
                                rgt=row["new_rgt"],
                                depth=row["new_depth"],
                                parent_id=row["parent_id"],
                            )
                        )

            cls._base_manager.bulk_update(fixed, ["lft", "rgt", "depth", "parent"])

        if fixed:
            logger.info("Tree fixed: %d nodes renumbered", len(fixed))
        return len(fixed)

    def append_to(self, target):
        """Places the node as the last child of ``target`` on the next save."""
        return self._set_pending_move("last-child", target)

    def prepend_to(self, target):
        """Places the node as the first child of ``target`` on the next save."""
        return self._set_pending_move("first-child", target)

    def after(self, target):
        """Places the node right after ``target`` on the next save."""
        return self._set_pending_move("right", target)

    def before(self, target):
        """Places the node right before ``target`` on the next save."""
        return self._set_pending_move("left", target)

    def reparent_to(self, target):
        return self.append_to(target)

    def make_root(self):
        """Makes the node the root of its tree on the next save."""
        self._pending_move = (ROOT, None)
        return self

    def move(self, target, pos="last-child"):
        """
        Moves the current node and all its descendants to a new position
        relative to another node, and saves it.
        """
        self._set_pending_move(pos, target).save()
        return self

    def append_node(self, node):
        """Adds ``node`` as the last child of this node."""
        return node.move(self, "last-child")

    def prepend_node(self, node):
        """Adds ``node`` as the first child of this node."""
        return node.move(self, "first-child")

    def _set_pending_move(self, pos, target):
        self._pending_move = (planner.check_position(pos), target)
        return self

    def _get_implicit_move(self):
        """
        Translates a change of the ``parent`` field into a move, so that
        ``node.parent = other; node.save()`` keeps the tree consistent.
        """
        if self._state.adding:
            changed = True
        else:
            snapshot = self.get_tree_snapshot()
            changed = snapshot is not None and snapshot[2] != self.parent_id
        if not changed:
            return None
        if self.parent_id is None:
            return ROOT, None
        return "last-child", self.parent

    def save(self, *args, **kwargs):
        """
        Saves the node, applying the pending positional change if there is
        one.
        """
        if not self._state.adding:
            self._check_scope()
        move = self._pending_move or self._get_implicit_move()
        if move is None:
            if not (self._state.adding or args or "update_fields" in kwargs):
                # bounds are only ever written by the tree handlers
                kwargs["update_fields"] = [
                    field.name
                    for field in self._meta.concrete_fields
                    if not field.primary_key and field.name not in TREE_FIELDS
                ]
            return super().save(*args, **kwargs)
        if args:
            raise TypeError("Tree nodes only accept keyword arguments in save().")

        pos, target = move
        if self._state.adding:
            if pos == ROOT:
                handler = NS_AddRootHandler(self, kwargs)
            else:
                handler = NS_InsertHandler(self, target, pos, kwargs)
        else:
            handler = NS_MoveHandler(self, target, None if pos == ROOT else pos, kwargs)
        handler.process()
        self._pending_move = None

    save.alters_data = True

    def _check_scope(self):
        snapshot = self._scope_snapshot
        if snapshot is not None and snapshot != self.get_scope_filter():
            raise InvalidMoveError(
                _("Node %(pk)s can't be moved to another tree.") % {"pk": self.pk}
            )

    def _save_tree_row(self, **kwargs):
        super().save(**kwargs)

    def delete(self, *args, **kwargs):
        """
        Removes the node and all its descendants, then closes the gap they
        leave in the tree.
        """
        return NS_DeleteHandler(self).process()

    delete.alters_data = True

    def has_pending_move(self):
        return self._pending_move is not None

    def get_depth(self):
        """:returns: the depth (level) of the node, the root being 0"""
        return self.depth

    def get_descendant_count(self):
        """:returns: the number of descendants of a node."""
        return bounds.descendant_count(self)

    def is_root(self):
        """:returns: True if the node is a root node (else, returns False)"""
        return self.parent_id is None

    def is_leaf(self):
        """:returns: True if the node is a leaf node (else, returns False)"""
        return self.rgt - self.lft == 1

    def is_descendant_of(self, node):
        """
        :returns: ``True`` if the node is a descendant of another node given
            as an argument, else, returns ``False``
        """
        return self.get_scope_filter() == node.get_scope_filter() and (
            bounds.is_descendant_interval(node, self)
        )

    def is_ancestor_of(self, node):
        return node.is_descendant_of(self)

    def is_child_of(self, node):
        """
        :returns: ``True`` is the node if a child of another node given as an
            argument, else, returns ``False``
        """
        return self.parent_id is not None and self.parent_id == node.pk

    def is_sibling_of(self, node):
        """
        :returns: ``True`` if the node is a sibling of another node given as an
            argument, else, returns ``False``
        """
        return (
            self.pk != node.pk
            and self.parent_id == node.parent_id
            and self.get_scope_filter() == node.get_scope_filter()
        )

    def _get_tree_manager(self):
        return get_base_model_class(self.__class__)._default_manager

    def get_root(self):
        """:returns: the root node for the current node object."""
        if self.is_root():
            return self
        return self._get_tree_manager().root(**self.get_scope_filter())

    def get_parent(self, update=False):
        """
        :returns: the parent node of the current node object.
        """
        if update and self.parent_id is not None:
            self.refresh_from_db(fields=["lft", "rgt", "depth", "parent"])
        return self.parent

    def get_ancestors(self):
        """
        :returns: A queryset containing the current node object's ancestors,
            starting by the root node and descending to the parent.
        """
        return self._get_tree_manager().ancestor_of(self)

    def get_descendants(self, inclusive=False):
        """
        :returns: A queryset of all the node's descendants as DFS, doesn't
            include the node itself unless ``inclusive`` is set
        """
        return self._get_tree_manager().descendant_of(self, inclusive)

    def get_children(self):
        """:returns: A queryset of all the node's children"""
        return self._get_tree_manager().child_of(self)

    def get_siblings(self, inclusive=True):
        """
        :returns: A queryset of all the node's siblings, including the node
            itself unless ``inclusive`` is ``False``.
        """
        return self._get_tree_manager().sibling_of(self, inclusive)

    def get_next_sibling(self):
        """
        :returns: The next node's sibling, or None if it was the rightmost
            sibling.
        """
        return self._get_tree_manager().next_siblings(self).first()

    def get_prev_sibling(self):
        """
        :returns: The previous node's sibling, or None if it was the leftmost
            sibling.
        """
        return self._get_tree_manager().prev_siblings(self, reverse=True).first()


class NS_SoftDeleteNode(NS_Node):
    """
    Nested Sets node that can be hidden instead of removed.

    Soft deleted nodes keep their bounds, so the tree numbering is never
    touched; the default manager leaves them out, and
    :meth:`NS_NodeQuerySet.to_tree` drops the descendants that would
    otherwise look orphaned.
    """

    deleted_at = models.DateTimeField(
        null=True, blank=True, db_index=True, editable=False
    )

    objects = NS_SoftDeleteManager()
    all_objects = NS_NodeManager()

    class Meta(NS_Node.Meta):
        abstract = True

    def is_soft_deleted(self):
        return self.deleted_at is not None

    def soft_delete(self):
        """
        Marks the node and its descendants as deleted.

        :returns: The number of nodes marked.
        """
        now = timezone.now()
        count = (
            self.__class__.all_objects.descendant_of(self, inclusive=True)
            .filter(deleted_at__isnull=True)
            .update(deleted_at=now)
        )
        self.deleted_at = now
        logger.info(
            'Node soft deleted: "%s" id=%s (%d nodes)', str(self), self.pk, count
        )
        return count

    def restore(self):
        """
        Restores the node, and the descendants that were soft deleted along
        with it.

        :returns: The number of nodes restored.
        """
        if self.deleted_at is None:
            return 0
        count = (
            self.__class__.all_objects.descendant_of(self, inclusive=True)
            .filter(deleted_at=self.deleted_at)
            .update(deleted_at=None)
        )
        self.deleted_at = None
        logger.info('Node restored: "%s" id=%s (%d nodes)', str(self), self.pk, count)
        return count
