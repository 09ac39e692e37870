import re
from collections.abc import Hashable, Mapping
from typing import Any, Iterable, List, Optional

import sqlalchemy as sa
from funcy import lcat, ldistinct, lremove, isnone
from sqlalchemy.orm import Session, object_session
from sqlalchemy.orm.state import InstanceState

from .exc import LazyRelationshipError


def is_collection(value: Any) -> bool:
    """ Is it a collection of objects, rather than one object?

    Mapped collections (dict-like relationships) are collections too
    """
    return isinstance(value, (list, tuple, set, frozenset, Mapping))


def wrap(value: Any) -> list:
    """ Wrap a value into a list: None becomes [], a collection is listed, an object becomes [object] """
    if value is None:
        return []
    elif isinstance(value, Mapping):
        return list(value.values())
    elif is_collection(value):
        return list(value)
    else:
        return [value]


def flatten_distinct(values: Iterable[Any]) -> list:
    """ Flatten a list of values & lists, drop the Nones, and remove duplicates

    SqlAlchemy instances are compared by identity: the identity map guarantees there is one object per row.
    Other hashable values are compared by equality; unhashable ones, by identity.
    """
    return ldistinct(lremove(isnone, lcat(map(wrap, values))), key=distinct_key)


def distinct_key(value: Any) -> tuple:
    """ The key to tell duplicates apart with """
    if isinstance(value, Hashable) and instance_state_or_none(value) is None:
        return ('value', value)
    return ('id', id(value))


def instance_state_or_none(instance: object) -> Optional[InstanceState]:
    """ Get the InstanceState of an SqlAlchemy instance; None for objects that aren't mapped """
    return sa.inspect(instance, raiseerr=False)


def is_attribute_loaded(instance: object, attr_name: str) -> bool:
    """ Has the attribute's value been loaded already?

    Objects that aren't SqlAlchemy instances always have their attributes loaded.
    """
    state = instance_state_or_none(instance)
    if state is None:
        return True
    return attr_name not in state.unloaded


def is_persistent(instance: object) -> bool:
    """ Is it an SqlAlchemy instance that's been loaded from the DB (and has a primary key)? """
    state = instance_state_or_none(instance)
    return state is not None and state.persistent


def instances_with_unloaded_attribute(instances: Iterable[object], attr_name: str) -> Iterable[InstanceState]:
    """ Iterate over instance states that have `attr_name` unloaded """
    for instance in instances:
        state = instance_state_or_none(instance)

        # Only return instances that:
        # 1. Are persistent in the DB (have a PK)
        # 2. Have this attribute unloaded
        if state is not None and state.persistent and attr_name in state.unloaded:
            yield state


def primary_key_value(instance: object) -> Any:
    """ Get the primary key of an instance: a scalar value, or a tuple for composite keys """
    mapper = sa.inspect(instance).mapper
    pk = mapper.primary_key_from_instance(instance)
    return pk[0] if len(pk) == 1 else tuple(pk)


def canonical_key(value: Any) -> str:
    """ Make a key that tolerates different types of ids: 1 and '1', UUID() and its str """
    return str(value)


def session_for(instances: Iterable[object]) -> Session:
    """ Find the Session these instances belong to """
    for instance in instances:
        session = object_session(instance)
        if session is not None:
            return session
    raise LazyRelationshipError("None of the instances belongs to a Session; can't load anything")


def snake_case(name: str) -> str:
    """ Convert a class name to snake_case: BlogPost -> blog_post """
    return re.sub(r'(?<=[a-z0-9])([A-Z])|(?<=[A-Z])([A-Z])(?=[a-z])', r'_\1\2', name).lower()


def primary_key_columns(mapper: sa.orm.Mapper) -> List[sa.Column]:
    """ Get the primary key columns of a Mapper """
    return list(mapper.primary_key)
