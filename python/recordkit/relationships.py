"""Relationship declarations for models.

Relations are declared once in the class body and bound to an owner record
on demand:

    >>> class User(Model):
    ...     __tablename__ = "users"
    ...     id: Mapped[int] = mapped_column(primary_key=True)
    ...     posts = has_many("Post")
    ...     roles = belongs_to_many("Role", pivot_table="role_user")
    >>>
    >>> posts = await user.related("posts").get_results()
    >>> users = await User.query().with_("posts.comments").get()
"""

from __future__ import annotations

import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from recordkit.exceptions import RelationNotFoundError

if TYPE_CHECKING:
    from recordkit.base import Model, Pivot
    from recordkit.query import QueryBuilder
    from recordkit.resolvers import Relation


# Global model registry - maps table names and class names to model classes
_model_registry: dict[str, type[Model]] = {}
# Discriminator value -> model class, for polymorphic relations
_morph_map: dict[str, type[Model]] = {}


def register_model(model_cls: type[Model]) -> None:
    """Register a model class for relationship resolution."""
    _model_registry[model_cls.__tablename__] = model_cls
    _model_registry[model_cls.__name__] = model_cls


def get_model(name: str) -> type[Model] | None:
    """Get a model class by table name or class name."""
    return _model_registry.get(name)


def morph_map(mapping: dict[str, type[Model]] | None = None) -> dict[str, type[Model]]:
    """Register (and return) discriminator values for polymorphic relations.

    Without a mapping, a model's discriminator is its table name.

    Example:
        >>> morph_map({"post": Post, "video": Video})
    """
    if mapping:
        _morph_map.update(mapping)
    return dict(_morph_map)


def get_morph_class(model: Model | type[Model]) -> str:
    """Discriminator value stored for ``model`` in ``*_type`` columns."""
    cls = model if isinstance(model, type) else type(model)
    for alias, registered in _morph_map.items():
        if registered is cls:
            return alias
    return cls.__tablename__


def resolve_morph_type(value: str | None, type_map: dict[str, Any] | None = None) -> type[Model] | None:
    """Map a stored discriminator back to a model class, or ``None``."""
    if value is None:
        return None
    if type_map and value in type_map:
        target = type_map[value]
        return get_model(target) if isinstance(target, str) else target
    if value in _morph_map:
        return _morph_map[value]
    return get_model(value)


# ========== Naming conventions ==========

_IRREGULARS = {
    "people": "person",
    "men": "man",
    "women": "woman",
    "children": "child",
    "teeth": "tooth",
    "feet": "foot",
    "mice": "mouse",
    "geese": "goose",
}
_UNCOUNTABLES = frozenset({"equipment", "information", "rice", "money", "species", "series", "fish", "sheep"})


def singularize(word: str) -> str:
    """Best-effort plural to singular conversion for table names.

    Example:
        >>> singularize("categories")
        'category'
        >>> singularize("addresses")
        'address'
        >>> singularize("people")
        'person'
    """
    lower = word.lower()
    if lower in _IRREGULARS:
        return _IRREGULARS[lower]
    if lower in _UNCOUNTABLES:
        return word
    if word.endswith("ies"):
        return word[:-3] + "y"
    if word.endswith("es"):
        base = word[:-2]
        if base.endswith(("s", "x", "z", "ch", "sh")):
            return base
    if word.endswith("s") and not word.endswith("ss"):
        return word[:-1]
    return word


def foreign_key_for(table: str) -> str:
    """Conventional foreign key column for a table (``users`` -> ``user_id``)."""
    return f"{singularize(table)}_id"


def parse_eager_paths(
    paths: dict[str, Callable[[QueryBuilder], Any] | None],
) -> dict[str, tuple[Callable[[QueryBuilder], Any] | None, dict[str, Callable[[QueryBuilder], Any] | None]]]:
    """Group dot paths by their first segment.

    Example:
        >>> parse_eager_paths({"posts": None, "posts.comments.author": None})
        {'posts': (None, {'comments.author': None})}
    """
    tree: dict[str, list[Any]] = {}
    for path, constraint in paths.items():
        head, _, rest = path.partition(".")
        entry = tree.setdefault(head, [None, {}])
        if rest:
            if constraint is not None or rest not in entry[1]:
                entry[1][rest] = constraint
        elif constraint is not None:
            entry[0] = constraint
    return {name: (entry[0], entry[1]) for name, entry in tree.items()}


# ========== Declarations ==========


@dataclass
class RelationSpec:
    """Declarative description of one relation on a model class."""

    kind: str
    target: str | type[Model] | None = None
    foreign_key: str | None = None
    local_key: str | None = None
    owner_key: str | None = None
    pivot_table: str | None = None
    foreign_pivot_key: str | None = None
    related_pivot_key: str | None = None
    parent_key: str | None = None
    related_key: str | None = None
    through: str | type[Model] | None = None
    first_key: str | None = None
    second_key: str | None = None
    second_local_key: str | None = None
    morph_name: str | None = None
    type_map: dict[str, Any] | None = None
    pivot_columns: tuple[str, ...] = ()
    pivot_class: type[Pivot] | None = None
    pivot_timestamps: bool = False
    inverse: bool = False

    name: str | None = field(default=None, repr=False)
    owner: type[Model] | None = field(default=None, repr=False)

    @property
    def is_many(self) -> bool:
        return self.kind in ("has_many", "belongs_to_many", "morph_many", "morph_to_many", "has_many_through")

    def related_model(self) -> type[Model]:
        """Resolve the target model class."""
        return self._resolve(self.target)

    def through_model(self) -> type[Model]:
        return self._resolve(self.through)

    def _resolve(self, target: str | type[Model] | None) -> type[Model]:
        if isinstance(target, type):
            return target
        if isinstance(target, str):
            # Prefer a class defined next to the owner, then the registry
            if self.owner is not None:
                module = sys.modules.get(self.owner.__module__)
                candidate = getattr(module, target, None) if module is not None else None
                if isinstance(candidate, type) and hasattr(candidate, "__tablename__"):
                    return candidate
            model = get_model(target)
            if model is not None:
                return model
        owner_name = self.owner.__name__ if self.owner is not None else "?"
        raise RelationNotFoundError(f"{self.name} -> {target}", owner_name)

    def resolver_class(self) -> type[Relation]:
        from recordkit import resolvers

        return resolvers.RESOLVERS[self.kind]

    def bind(self, owner: Model) -> Relation:
        """Build the lazy relation builder for one owner record."""
        return self.resolver_class()(owner, self)

    async def eager_load(
        self,
        owner_model: type[Model],
        owners: list[Model],
        name: str,
        nested: dict[str, Callable[[QueryBuilder], Any] | None],
        constraint: Callable[[QueryBuilder], Any] | None,
    ) -> None:
        """Load this relation for every owner with batched queries."""
        resolver = self.resolver_class().for_eager(owner_model, self)
        await resolver.eager_load(owners, name, nested, constraint)


def has_one(target: str | type[Model], *, foreign_key: str | None = None, local_key: str | None = None) -> Any:
    """One related record holding a key to this record.

    Example:
        >>> profile = has_one("Profile")  # profiles.user_id -> users.id
    """
    return RelationSpec("has_one", target, foreign_key=foreign_key, local_key=local_key)


def has_many(target: str | type[Model], *, foreign_key: str | None = None, local_key: str | None = None) -> Any:
    """Many related records holding a key to this record.

    Example:
        >>> posts = has_many("Post")  # posts.user_id -> users.id
    """
    return RelationSpec("has_many", target, foreign_key=foreign_key, local_key=local_key)


def belongs_to(target: str | type[Model], *, foreign_key: str | None = None, owner_key: str | None = None) -> Any:
    """The record this record's foreign key points to.

    Example:
        >>> author = belongs_to("User", foreign_key="user_id")
    """
    return RelationSpec("belongs_to", target, foreign_key=foreign_key, owner_key=owner_key)


def belongs_to_many(
    target: str | type[Model],
    *,
    pivot_table: str | None = None,
    foreign_pivot_key: str | None = None,
    related_pivot_key: str | None = None,
    parent_key: str | None = None,
    related_key: str | None = None,
    pivot_columns: tuple[str, ...] | list[str] = (),
    pivot_class: type[Pivot] | None = None,
    pivot_timestamps: bool = False,
) -> Any:
    """Many-to-many through a pivot table.

    The pivot table defaults to the two singular table names in alphabetical
    order (``role_user`` for users and roles).

    Example:
        >>> roles = belongs_to_many("Role", pivot_columns=["granted_by"])
    """
    return RelationSpec(
        "belongs_to_many",
        target,
        pivot_table=pivot_table,
        foreign_pivot_key=foreign_pivot_key,
        related_pivot_key=related_pivot_key,
        parent_key=parent_key,
        related_key=related_key,
        pivot_columns=tuple(pivot_columns),
        pivot_class=pivot_class,
        pivot_timestamps=pivot_timestamps,
    )


def has_many_through(
    target: str | type[Model],
    through: str | type[Model],
    *,
    first_key: str | None = None,
    second_key: str | None = None,
    local_key: str | None = None,
    second_local_key: str | None = None,
    morph_name: str | None = None,
) -> Any:
    """Distant records reached through an intermediate model.

    ``first_key`` is the intermediate's key to this record, ``second_key``
    the target's key to the intermediate. With ``morph_name`` the first hop
    is polymorphic (``{morph_name}_id`` / ``{morph_name}_type``).

    Example:
        >>> # countries -> users.country_id -> posts.user_id
        >>> posts = has_many_through("Post", "User")
    """
    return RelationSpec(
        "has_many_through",
        target,
        through=through,
        first_key=first_key,
        second_key=second_key,
        local_key=local_key,
        second_local_key=second_local_key,
        morph_name=morph_name,
    )


def morph_one(target: str | type[Model], name: str, *, local_key: str | None = None) -> Any:
    """Polymorphic one-to-one; the target stores ``{name}_id`` and ``{name}_type``."""
    return RelationSpec("morph_one", target, morph_name=name, local_key=local_key)


def morph_many(target: str | type[Model], name: str, *, local_key: str | None = None) -> Any:
    """Polymorphic one-to-many.

    Example:
        >>> comments = morph_many("Comment", "commentable")
    """
    return RelationSpec("morph_many", target, morph_name=name, local_key=local_key)


def morph_to(name: str, type_map: dict[str, Any] | None = None) -> Any:
    """The polymorphic parent of this record.

    Discriminators are resolved through ``type_map``, then the global
    :func:`morph_map`, then table names. Unknown discriminators resolve
    to ``None``.

    Example:
        >>> commentable = morph_to("commentable", {"posts": "Post", "videos": "Video"})
    """
    return RelationSpec("morph_to", None, morph_name=name, type_map=type_map)


def morph_to_many(
    target: str | type[Model],
    name: str,
    *,
    pivot_table: str | None = None,
    pivot_columns: tuple[str, ...] | list[str] = (),
) -> Any:
    """Polymorphic many-to-many; the pivot defaults to ``{name}s``.

    Example:
        >>> tags = morph_to_many("Tag", "taggable")  # taggables(tag_id, taggable_id, taggable_type)
    """
    return RelationSpec(
        "morph_to_many", target, morph_name=name, pivot_table=pivot_table, pivot_columns=tuple(pivot_columns)
    )


def morphed_by_many(
    target: str | type[Model],
    name: str,
    *,
    pivot_table: str | None = None,
    pivot_columns: tuple[str, ...] | list[str] = (),
) -> Any:
    """Inverse of :func:`morph_to_many`, declared on the shared model.

    Example:
        >>> posts = morphed_by_many("Post", "taggable")  # on Tag
    """
    return RelationSpec(
        "morph_to_many",
        target,
        morph_name=name,
        pivot_table=pivot_table,
        pivot_columns=tuple(pivot_columns),
        inverse=True,
    )
