""" Deferred values, and the executor that loads them in batches

A loader does not load anything right away. Instead, it registers the record with the executor
under a batch key, and gets back a `Deferred`:

    deferred = executor.register(post, key=(BlogPost, 'category'), batch_fn=load_categories)

More records get registered under the same key while the serializer walks the tree.
Nothing is loaded until somebody calls `deferred.sync()`: at this point, the batch callback is invoked
once with every record gathered so far, and every `Deferred` of this batch gets its value.
"""

import logging
from contextlib import contextmanager
from enum import Enum
from typing import Any, Callable, Dict, Hashable, Iterator, List, Optional, Tuple

from .exc import BatchReentryError


logger = logging.getLogger(__name__)


# resolve(item, value): give a value to one item of the batch
ResolveCallback = Callable[[Any, Any], None]

# batch_fn(items, resolve): load values for all items and resolve() every one of them
BatchCallback = Callable[[List[Any], ResolveCallback], Any]

# observer(result): called with whatever batch_fn has returned
ObserverCallback = Callable[[Any], Any]


class DeferredState(Enum):
    PENDING = 'pending'  # registered; the batch has not been loaded yet
    BATCHED = 'batched'  # the batch has been loaded; the value is waiting to be picked up
    RESOLVED = 'resolved'  # the value has been handed out and memoized


class Batch:
    """ Items gathered under one batch key, and the one callback that loads them all """

    def __init__(self, executor: 'BatchExecutor', key: Hashable, batch_fn: BatchCallback):
        self.executor = executor
        self.key = key
        self.batch_fn = batch_fn
        self.items: List[Any] = []
        self.fired = False
        self.loading = False
        self.error: Optional[BaseException] = None
        self.observers: List[ObserverCallback] = []
        self.result = None

        # id(item) -> value
        self._results: Dict[int, Any] = {}

    def add(self, item):
        self.items.append(item)

    def run(self):
        """ Invoke the batch callback, unless it has already been invoked """
        if self.loading:
            raise BatchReentryError(self.key)
        if self.fired:
            return

        # Close the batch first: anything registered from now on, including registrations made by the callback
        # itself, goes into a new batch
        self.executor._close(self)
        self.fired = True
        self.loading = True

        logger.debug("%r: loading a batch of %s items", self.key, len(self.items))
        try:
            self.result = self.batch_fn(list(self.items), self._resolve)
        except Exception as e:
            # Every Deferred of this batch is going to fail with it
            self.error = e
            raise
        finally:
            self.loading = False

        # Observers that come while these are running are invoked by observe() right away
        for observer in list(self.observers):
            observer(self.result)

    def observe(self, observer: ObserverCallback):
        """ Invoke `observer` with the result of the batch

        Equal observers are invoked once. If the batch is loaded already, the observer is invoked right away.
        """
        if observer in self.observers:
            return
        self.observers.append(observer)

        if self.fired and not self.loading and self.error is None:
            observer(self.result)

    def value_for(self, item) -> Any:
        """ Get the value for one item; `None` if the callback hasn't resolved it """
        if self.error is not None:
            raise self.error
        return self._results.get(id(item))

    def _resolve(self, item, value):
        self._results[id(item)] = value


class Deferred:
    """ A value that is not loaded yet

    Call sync() to get the value. The first call loads the whole batch; the value is memoized.
    """

    def __init__(self, item, batch: Optional[Batch]):
        self.item = item
        self._batch = batch
        self._value = None
        self._resolved = False

    @classmethod
    def resolved(cls, value) -> 'Deferred':
        """ Make a Deferred that already has its value """
        deferred = cls(None, None)
        deferred._value = value
        deferred._resolved = True
        return deferred

    @property
    def state(self) -> DeferredState:
        if self._resolved:
            return DeferredState.RESOLVED
        elif self._batch.fired and not self._batch.loading:
            return DeferredState.BATCHED
        else:
            return DeferredState.PENDING

    def sync(self):
        """ Get the value: load the batch if necessary """
        if not self._resolved:
            self._batch.run()
            self._value = self._batch.value_for(self.item)
            self._resolved = True
        return self._value

    def __repr__(self):
        return f'<Deferred {self.state.value}: {self.item!r}>'


class BatchExecutor:
    """ The scope of deferred values: normally, one per request

    The executor remembers every Deferred it has given out, and every batch that is still open.
    Call clear() when the request is over, or use batch_scope()
    """

    def __init__(self):
        # Open batches: key -> Batch
        self._batches: Dict[Hashable, Batch] = {}

        # Every Deferred handed out: (key, id(item)) -> Deferred
        # The Deferred keeps a reference to its item, so the id() won't get reused while it's here
        self._deferred: Dict[Tuple[Hashable, int], Deferred] = {}

    def register(self, item, key: Hashable, batch_fn: BatchCallback, observer: Optional[ObserverCallback] = None) -> Deferred:
        """ Register an item for batch loading under `key`

        Items registered under the same key before the batch is loaded all go into one call of `batch_fn`.
        If the batch is already loaded, a new batch is opened.

        The same item registered twice under the same key gets the same Deferred.
        The key must identify the value: two loads that may give different values need different keys.

        Args:
            item: The object to load the value for
            key: The batch key. The `batch_fn` of the first registration is used for the whole batch.
            batch_fn: The callback: batch_fn(items, resolve)
            observer: A callable to invoke with the result of `batch_fn`.
                Every registration may bring its own observer, even when it gets an existing Deferred.
        """
        deferred = self._deferred.get((key, id(item)))
        if deferred is None:
            batch = self._batches.get(key)
            if batch is None:
                batch = self._batches[key] = Batch(self, key, batch_fn)
            batch.add(item)

            deferred = self._deferred[key, id(item)] = Deferred(item, batch)

        if observer is not None:
            deferred._batch.observe(observer)
        return deferred

    def clear(self):
        """ Forget every batch and every Deferred """
        self._batches.clear()
        self._deferred.clear()

    @property
    def open_batch_keys(self) -> List[Hashable]:
        """ Keys of batches that are waiting to be loaded """
        return list(self._batches)

    def _close(self, batch: Batch):
        if self._batches.get(batch.key) is batch:
            del self._batches[batch.key]


@contextmanager
def batch_scope() -> Iterator[BatchExecutor]:
    """ A new executor that is cleared when the block ends """
    executor = BatchExecutor()
    try:
        yield executor
    finally:
        executor.clear()
