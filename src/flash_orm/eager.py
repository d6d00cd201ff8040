"""
Eager-load specification parsing.

Every accepted input form is normalized to one flat mapping of
dot-delimited relation path -> constraint closure:

    >>> parse_with_relations(["posts.comments", "roles:id,name"])
    {'posts': <noop>, 'posts.comments': <noop>, 'roles': <select id, name>}

Every prefix of a nested path gets an entry, so each level can be resolved
on its own.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, Mapping

Constraint = Callable[[Any], Any]


def noop(relation: Any) -> None:
    """Constraint of a path requested without a closure."""
    return None


def nested_placeholder(relation: Any) -> None:
    """Constraint of a prefix added only because a deeper path was requested."""
    return None


def combine_constraints(constraints: Iterable[Constraint]) -> Constraint:
    """Chain closures into one, applied in order."""
    chain = [c for c in constraints if c not in (noop, nested_placeholder)]
    if not chain:
        return noop
    if len(chain) == 1:
        return chain[0]

    def combined(relation: Any) -> None:
        for constraint in chain:
            constraint(relation)

    return combined


def create_select_with_constraint(name: str) -> tuple[str, Constraint]:
    """
    ``"posts:id,title"`` -> ``("posts", <select id, title>)``.

    Relations that join a second table qualify bare column names with the
    related table through ``qualify_select_column``.
    """
    name, _, column_list = name.partition(":")
    columns = [c.strip() for c in column_list.split(",") if c.strip()]

    def select_columns(relation: Any) -> None:
        relation.select(*[relation.qualify_select_column(c) for c in columns])

    return name, select_columns


def parse_name_and_constraint(name: str, constraint: Any = None) -> tuple[str, Constraint]:
    if ":" in name:
        name, select_columns = create_select_with_constraint(name)
        return name, combine_constraints([select_columns, constraint or noop])
    return name, constraint or noop


def add_nested_withs(name: str, results: dict[str, Constraint]) -> dict[str, Constraint]:
    """Give every prefix of ``name`` an entry without overriding existing ones."""
    progress: list[str] = []
    for segment in name.split(".")[:-1]:
        progress.append(segment)
        results.setdefault(".".join(progress), nested_placeholder)
    return results


def prepare_nested_with_relationships(
    relations: Mapping[str, Any], prefix: str = ""
) -> dict[str, Constraint]:
    """
    Flatten a (possibly nested) mapping.

    ``{"posts": {"comments": fn}}`` becomes
    ``{"posts": noop, "posts.comments": fn}``.
    """
    prepared: dict[str, Constraint] = {}
    for key, value in relations.items():
        if isinstance(value, Mapping):
            name, select_constraint = parse_name_and_constraint(key)
            path = f"{prefix}{name}"
            prepared[path] = combine_constraints([select_constraint, prepared.get(path, noop)])
            for nested_path, nested in prepare_nested_with_relationships(value, f"{path}.").items():
                prepared[nested_path] = combine_constraints(
                    [prepared.get(nested_path, noop), nested]
                )
            continue
        if value is not None and not callable(value):
            msg = f"Eager-load constraint for '{key}' must be callable, got {type(value).__name__}."
            raise TypeError(msg)
        name, constraint = parse_name_and_constraint(key, value)
        path = f"{prefix}{name}"
        prepared[path] = combine_constraints([prepared.get(path, noop), constraint])
    return prepared


def normalize_with_arguments(args: tuple[Any, ...]) -> dict[str, Any]:
    """
    Collect the positional forms accepted by ``with_()`` into one mapping.

    Accepts names, lists/tuples of names, mappings, and the two argument
    form ``with_("posts", lambda r: ...)``.
    """
    if len(args) == 2 and isinstance(args[0], str) and callable(args[1]):
        return {args[0]: args[1]}

    relations: dict[str, Any] = {}
    for arg in args:
        if isinstance(arg, str):
            relations.setdefault(arg, None)
        elif isinstance(arg, Mapping):
            relations.update(arg)
        elif isinstance(arg, (list, tuple, set)):
            relations.update(normalize_with_arguments(tuple(arg)))
        else:
            msg = f"Cannot eager load {arg!r}; pass names, lists or mappings."
            raise TypeError(msg)
    return relations


def parse_with_relations(relations: Mapping[str, Any]) -> dict[str, Constraint]:
    """Normalize a relation mapping into path -> constraint with every prefix present."""
    results: dict[str, Constraint] = {}
    for name, constraint in prepare_nested_with_relationships(relations).items():
        add_nested_withs(name, results)
        results[name] = constraint
    return results


def merge_eager_loads(
    current: Mapping[str, Constraint], parsed: Mapping[str, Constraint]
) -> dict[str, Constraint]:
    """Merge a parsed spec into an accumulated one; placeholders never override."""
    merged = dict(current)
    for name, constraint in parsed.items():
        if constraint is nested_placeholder and name in merged:
            continue
        merged[name] = constraint
    return merged


def is_nested_under(relation: str, name: str) -> bool:
    """True for ``("posts", "posts.comments")`` but not ``("posts", "posts")``."""
    return name.startswith(f"{relation}.")


def relations_nested_under(
    eager_load: Mapping[str, Constraint], relation: str
) -> dict[str, Constraint]:
    """Deeper paths of ``relation`` with the ``relation.`` prefix stripped."""
    prefix = f"{relation}."
    return {
        name[len(prefix):]: constraint
        for name, constraint in eager_load.items()
        if is_nested_under(relation, name)
    }


def top_level(eager_load: Mapping[str, Constraint]) -> dict[str, Constraint]:
    return {name: c for name, c in eager_load.items() if "." not in name}
