""" Loaders: load related objects for a batch of records at once

A loader is given one record at a time, but it never loads anything for one record.
It registers the record with the executor under its batch key, and when the batch is finally loaded,
`load_data()` receives every record gathered under this key and loads their values with one query.

Every loader accepts an `observer`: a callable that receives all the objects loaded by the batch.
This is how the serializer prefetches nested relationships of the loaded objects.
"""

from typing import Any, Callable, Hashable, List, Optional

from funcy import group_by, ldistinct, lremove, isnone
from sqlalchemy import log
from sqlalchemy.orm import class_mapper, InstrumentedAttribute

from . import bulk_load, util
from .batch import BatchExecutor, Deferred, ResolveCallback


# observer(loaded_objects)
Observer = Callable[[List[Any]], Any]


@log.class_logger
class Loader:
    """ Base class for loaders. A loader has to implement `batch_key()` and `load_data()` """

    def load(self, executor: BatchExecutor, record: object, observer: Optional[Observer] = None) -> Deferred:
        """ Lazy load the value for a record

        Args:
            executor: The executor to register the record with
            record: The object to load the value for
            observer: A callable to invoke with all the objects loaded by the batch
        """
        return executor.register(
            record,
            key=self.batch_key(record),
            batch_fn=self._load_batch,
            observer=observer,
        )

    def batch_key(self, record: object) -> Hashable:
        """ Compute the batch key for a record

        Records with the same batch key are loaded together, and a record gets one value per key:
        the key has to include everything that makes a difference to the value, e.g. the foreign key
        """
        raise NotImplementedError

    def load_data(self, records: List[object], resolve: ResolveCallback) -> List[Any]:
        """ Load the data for all records of a batch

        Args:
            records: All records gathered under one batch key
            resolve: Assign a value to a record: resolve(record, value)

        Returns:
            All the loaded objects
        """
        raise NotImplementedError

    def _load_batch(self, records: List[object], resolve: ResolveCallback) -> List[Any]:
        data = self.load_data(records, resolve)

        if self._should_log_info():
            self.logger.info("%r: batch loaded %s objects for %s records", self, len(data), len(records))

        return data


@log.class_logger
class Association(Loader):
    """ Lazy load an SqlAlchemy relationship (one-to-many, many-to-one, many-to-many)

    If the relationship is already loaded on a record, it's used right away.
    Otherwise, the relationship is bulk-loaded for every record of the batch with one query.
    """

    def __init__(self, association_name: str, model: Optional[type] = None):
        """
        Args:
            association_name: The name of the relationship on the model. E.g. when loading user.posts, it's 'posts'
            model: The model the relationship is loaded for. By default, the class of the record.
        """
        self.association_name = association_name
        self.model = model

    def load(self, executor: BatchExecutor, record: object, observer: Optional[Observer] = None) -> Deferred:
        if util.is_attribute_loaded(record, self.association_name):
            data = getattr(record, self.association_name)
            if observer is not None:
                observer(util.flatten_distinct([data]))
            return Deferred.resolved(data)

        return super().load(executor, record, observer)

    def batch_key(self, record: object) -> Hashable:
        return (self.model or type(record), self.association_name)

    def load_data(self, records: List[object], resolve: ResolveCallback) -> List[Any]:
        # The executor gives us distinct objects; within a Session, the identity map makes them distinct rows.
        # Skip those that have the relationship loaded already: e.g. by another query, or by another batch
        states = util.instances_with_unloaded_attribute(records, self.association_name)

        # One bulk load per Session and Mapper. Normally, there's just one of them.
        for (session, mapper), session_states in group_by(lambda state: (state.session, state.mapper), states).items():
            bulk_load.bulk_load_relationship(session, mapper, session_states, self.association_name)

        # The relationship is loaded now: no more queries
        data = []
        for record in records:
            value = getattr(record, self.association_name)
            data.append(value)
            resolve(record, value)

        return util.flatten_distinct(data)

    def __repr__(self):
        model_name = self.model.__name__ if self.model else '*'
        return f'{type(self).__name__}({model_name}.{self.association_name})'


@log.class_logger
class SimpleHasMany(Loader):
    """ Lazy load objects that refer to the record with a foreign key """

    def __init__(self, model: type, foreign_key: str):
        """
        Args:
            model: The model to load. E.g. when loading company's accounts, it's `Account`
            foreign_key: The foreign key on the `model`. E.g. when loading company's accounts, it's 'company_id'
        """
        self.model = model
        self.foreign_key = foreign_key

    def batch_key(self, record: object) -> Hashable:
        return (type(record), self.model, self.foreign_key)

    def load_data(self, records: List[object], resolve: ResolveCallback) -> List[Any]:
        record_ids = ldistinct(lremove(isnone, map(util.primary_key_value, records)))

        if record_ids:
            session = util.session_for(records)
            foreign_key: InstrumentedAttribute = getattr(self.model, self.foreign_key)
            data = bulk_load.load_where_in(session, self.model, foreign_key, record_ids)
        else:
            data = []

        # Some records use UUIDs as their ids; compare strings
        data_by_fk = group_by(lambda obj: util.canonical_key(getattr(obj, self.foreign_key)), data)
        for record in records:
            resolve(record, data_by_fk.get(util.canonical_key(util.primary_key_value(record)), []))

        return data

    def __repr__(self):
        return f'{type(self).__name__}({self.model.__name__}.{self.foreign_key})'


@log.class_logger
class SimpleBelongsTo(Loader):
    """ Lazy load the object the record refers to with a foreign key """

    def __init__(self, model: type, foreign_key: Optional[str] = None):
        """
        Args:
            model: The model to load. E.g. when loading account.company, it's `Company`
            foreign_key: The foreign key on the record. Default: "<model_name>_id", e.g. "company_id"
        """
        self.model = model
        self.foreign_key = foreign_key or f'{util.snake_case(model.__name__)}_id'

    def batch_key(self, record: object) -> Hashable:
        return (type(record), self.model, self.foreign_key)

    def load_data(self, records: List[object], resolve: ResolveCallback) -> List[Any]:
        # Records with a NULL foreign key do not need anything loaded
        data_ids = ldistinct(lremove(isnone, (getattr(record, self.foreign_key) for record in records)))

        if data_ids:
            session = util.session_for(records)
            data = bulk_load.load_where_in(session, self.model, self._primary_key_attribute(), data_ids)
        else:
            data = []

        data_by_id = {util.canonical_key(util.primary_key_value(obj)): obj for obj in data}
        for record in records:
            fk_value = getattr(record, self.foreign_key)
            resolve(record, None if fk_value is None else data_by_id.get(util.canonical_key(fk_value)))

        return data

    def _primary_key_attribute(self) -> InstrumentedAttribute:
        mapper = class_mapper(self.model)
        pk_columns = util.primary_key_columns(mapper)
        assert len(pk_columns) == 1, f'{self!r} does not support composite primary keys'
        return mapper.get_property_by_column(pk_columns[0]).class_attribute

    def __repr__(self):
        return f'{type(self).__name__}({self.model.__name__} by {self.foreign_key})'


@log.class_logger
class Direct(Loader):
    """ Lazy load a value by calling a function for every record

    This one does not batch any queries: it just defers the computation until the value is needed.
    """

    def __init__(self, relationship_name: str, load_fn: Optional[Callable[[object], Any]] = None):
        """
        Args:
            relationship_name: Used for the batch key. If there's no `load_fn`, the attribute with this name is read.
            load_fn: A function to compute the value for a record: load_fn(record)
        """
        self.relationship_name = relationship_name
        self.load_fn = load_fn

    def batch_key(self, record: object) -> Hashable:
        return (type(record), self.relationship_name, self.load_fn)

    def load_data(self, records: List[object], resolve: ResolveCallback) -> List[Any]:
        data = []
        for record in records:
            value = self._calculate_value(record)
            data.append(value)
            resolve(record, value)

        return util.flatten_distinct(data)

    def _calculate_value(self, record: object) -> Any:
        if self.load_fn is None:
            return getattr(record, self.relationship_name)
        return self.load_fn(record)

    def __repr__(self):
        return f'{type(self).__name__}({self.relationship_name})'
