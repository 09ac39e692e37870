""" Bulk load relationships and rows for many instances at once """

import logging
from typing import Any, Iterable, List, Tuple

from funcy import chunks
from sqlalchemy import Column, tuple_
from sqlalchemy.orm import Mapper, Session, InstrumentedAttribute, joinedload, load_only
from sqlalchemy.orm.state import InstanceState
from sqlalchemy.sql.elements import ColumnElement

from .util import primary_key_columns


logger = logging.getLogger(__name__)


# `500` is the number SqlAlchemy uses internally with SelectInLoader
BULK_LOAD_CHUNK_SIZE = 500


def bulk_load_relationship(session: Session, mapper: Mapper, states: Iterable[InstanceState], attr_name: str):
    """ Given a list of instances, augment them with a relationship `attr_name` by loading it from the DB

    It will augment all instances in chunks, not all at once.

    Args:
        session: The Session to use for loading
        mapper: The Mapper all those instances are handled with
        states: The instances to augment
        attr_name: The relationship to load
    """
    if attr_name not in mapper.relationships:
        # Not a relationship. What is it?
        raise KeyError(attr_name)

    # We're going to make SQL queries, so we have to temporarily disable Session's autoflush.
    # If we don't, it may try to save any unsaved instances.
    with session.no_autoflush:
        # Iterate those instances in bite-size chunks
        for states_chunk in chunks(BULK_LOAD_CHUNK_SIZE, states):
            # Collect primary keys from those instances, and load the missing relationship
            identities = [state.identity for state in states_chunk]
            _bulk_load_relationship_for_identities(session, mapper, identities, attr_name)


def _bulk_load_relationship_for_identities(session: Session, mapper: Mapper, identities: List[Tuple], attr_name: str):
    """ Load a relationship attribute for a list of instances where the relationship is unloaded """
    Model = mapper.class_
    relationship: InstrumentedAttribute = mapper.relationships[attr_name].class_attribute
    pk_attributes = [mapper.get_property_by_column(col).class_attribute for col in primary_key_columns(mapper)]

    logger.debug("%s.%s: loading for %s instances", Model.__name__, attr_name, len(identities))

    # Note that we won't do anything manually here. We just make a query, and seemingly throw it away.
    # But what happens here is that we have a model that's partially loaded:
    #       load_only(primary key fields)
    # This tells SqlAlchemy that the query contains `Model` instances.
    # Then we load a relationship using joinedload().
    #
    # Because all those instances are already in SqlAlchemy's Session which maintains an identity map,
    # when the relationship is loaded from the database... it will augment the instances that are already
    # in the session. Only unloaded attributes are populated, so modified values are not overwritten.
    session.query(Model).options(
        load_only(*pk_attributes),
        joinedload(relationship)
    ).filter(
        build_primary_key_condition(primary_key_columns(mapper), identities)
    ).all()


def load_where_in(session: Session, Model: type, column: InstrumentedAttribute, values: Iterable[Any]) -> list:
    """ Load all instances of `Model` where `column` is one of `values`

    The values are queried in chunks: a chunk per query.
    """
    found = []
    with session.no_autoflush:
        for values_chunk in chunks(BULK_LOAD_CHUNK_SIZE, values):
            found.extend(
                session.query(Model).filter(column.in_(values_chunk)).all()
            )
    return found


def build_primary_key_condition(pk_columns: List[Column], identities: Iterable[Tuple]) -> ColumnElement:
    """ Build an IN(...) condition for a primary key to select many instances at once

    Args:
        pk_columns: The columns to filter with
        identities: An iterable of identities (primary key tuples)

    A single-column primary key looks like this:

        WHERE id IN (:val, :val, ...)

    A composite primary key uses tuples:

        WHERE (pk_col1, pk_col2) IN ((:val, :val), (:val, :val), ...)
    """
    if len(pk_columns) == 1:
        return pk_columns[0].in_([identity[0] for identity in identities])
    else:
        return tuple_(*pk_columns).in_(identities)
