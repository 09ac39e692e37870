""" Serializers with lazy relationships

A serializer first prepares a tree of deferred values for every nested lazy relationship.
The deferred values are evaluated only when they're requested, and by that time, the sibling records
have already registered their loads: all of them are loaded together.

E.g. when rendering `posts.category` for a user: instead of loading a category for each post separately,
the serializer will gather the posts and load all their categories at once.
"""

from collections.abc import Mapping
from operator import attrgetter
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Tuple, Union

from . import util
from .batch import BatchExecutor, Deferred
from .dig import lazy_dig
from .exc import UndefinedLazyRelationshipError
from .loaders import Loader, Association


# How deep the serializer goes when prefetching nested relationships
LAZY_NESTING_LEVELS = 3
NESTING_START_LEVEL = 1


class LazyRelationshipMeta:
    """ Lazy relationship details

    Args:
        name: The name of the lazy relationship
        loader: The loader for the relationship
        serializer: The serializer for the loaded objects. Either a class, or a callable that returns it.
            Without a serializer, relationships of the loaded objects are not prefetched.
        load_for: Load the relationship for another object: e.g. when the serialized object is a decorator,
            and the real model is available as one of its attributes.
            Either an attribute name, or a callable: load_for(object) -> object
    """

    def __init__(self, name: str, loader: Loader,
                 serializer: Union[type, Callable[[], type], None] = None,
                 load_for: Union[str, Callable[[object], object], None] = None):
        self.name = name
        self.loader = loader
        self.load_for = load_for
        self._serializer = serializer

        if load_for is None:
            self._target_for = _same_object
        elif isinstance(load_for, str):
            self._target_for = attrgetter(load_for)
        else:
            self._target_for = load_for

    @property
    def serializer_class(self) -> Optional[type]:
        """ The serializer class for the loaded objects """
        if self._serializer is not None and not isinstance(self._serializer, type):
            # A `lambda: Serializer`: resolve it once
            self._serializer = self._serializer()
        return self._serializer

    def target_for(self, obj: object) -> object:
        """ Get the object to load the relationship for """
        return self._target_for(obj)

    def __repr__(self):
        return f'<LazyRelationshipMeta {self.name}: {self.loader!r}>'


def _same_object(obj):
    return obj


class lazy_relationship:
    """ Declare a lazy relationship on a serializer

    Example:

        class BlogPostSerializer(LazySerializer):
            attributes = ('id', 'title')

            category = lazy_relationship(SimpleBelongsTo(Category), serializer=lambda: CategorySerializer)
            comments = lazy_relationship(serializer=lambda: CommentSerializer)  # Association('comments')

    Reading the attribute on a serializer instance gives the loaded value:

        serializer.category
    """

    def __init__(self, loader: Optional[Loader] = None, serializer=None, load_for=None):
        self.loader = loader
        self.serializer = serializer
        self.load_for = load_for
        self.name = None

    def __set_name__(self, owner: type, name: str):
        self.name = name
        owner.declare_lazy_relationship(name, loader=self.loader, serializer=self.serializer, load_for=self.load_for)

    def __get__(self, instance: Optional['LazySerializer'], owner: type):
        if instance is None:
            return self
        return instance.lazy(self.name)


class LazySerializer:
    """ A serializer for one object, with lazy relationships

    Creating a serializer prefetches its lazy relationships: it registers the loads, but does not make them.
    The loads are made when a value is needed: with `serializer.lazy(name)`, or by reading the attribute.
    """

    # Lazy relationships: name -> meta
    # Every subclass has its own copy
    lazy_relationships: Dict[str, LazyRelationshipMeta] = {}

    # Relationships are prefetched this deep
    lazy_nesting_levels: int = LAZY_NESTING_LEVELS

    # Attributes to copy as they are with as_dict()
    attributes: Tuple[str, ...] = ()

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        cls._own_lazy_relationships()

    def __init__(self, obj: object, executor: BatchExecutor):
        self.object = obj
        self.executor = executor

        self.init_all_lazy_relationships(executor, obj)

    def lazy(self, relation_name: str) -> Any:
        """ Get the value of a lazy relationship """
        return self.load_lazy_relationship(self.executor, relation_name, self.object)

    def lazy_dig(self, *relation_names: str) -> Any:
        """ Dig through a chain of lazy relationships

        Returns:
            One object (or None) when every relationship in the chain is singular; a list otherwise.

        Example:
            serializer.lazy_dig('author', 'address')  # -> Address | None
            serializer.lazy_dig('author', 'rewards')  # -> [Reward, ...]
        """
        return lazy_dig(self.executor, type(self), self.object, *relation_names)

    def as_dict(self, include=()) -> dict:
        """ Render the object: its attributes, and the included relationships

        Args:
            include: Relationships to render: "posts.category", ["posts", "comments.user"], or {"posts": {}}
        """
        return _render([self], parse_include(include))[0]

    @classmethod
    def as_dict_many(cls, objects: Iterable[object], executor: BatchExecutor, include=()) -> List[dict]:
        """ Render many objects

        All serializers are created before anything is rendered, so their relationships are loaded together.
        """
        serializers = [cls(obj, executor) for obj in objects]
        return _render(serializers, parse_include(include))

    def _render_attributes(self) -> dict:
        return {name: getattr(self.object, name) for name in self.attributes}

    # region Declaration

    @classmethod
    def declare_lazy_relationship(cls, name: str, loader: Optional[Loader] = None, serializer=None, load_for=None) -> LazyRelationshipMeta:
        """ Define a new lazy relationship on this serializer

        Args:
            name: The name of the lazy relationship
            loader: The loader. Default: Association(name), the SqlAlchemy relationship with the same name
            serializer: The serializer for the loaded objects
            load_for: Load the relationship for another object
        """
        cls._own_lazy_relationships()

        meta = LazyRelationshipMeta(
            name=name,
            loader=loader or Association(name),
            serializer=serializer,
            load_for=load_for,
        )
        cls.lazy_relationships[name] = meta
        return meta

    @classmethod
    def _own_lazy_relationships(cls):
        # Declarations on a subclass never modify the parent's relationships.
        # Note that __set_name__() gets here before __init_subclass__() does
        if 'lazy_relationships' not in cls.__dict__:
            cls.lazy_relationships = dict(cls.lazy_relationships)

    # endregion

    # region Evaluation

    @classmethod
    def load_lazy_relationship(cls, executor: BatchExecutor, relation_name: str, obj: object) -> Any:
        """ Load a lazy relationship for an object

        The deferred value is evaluated right here: this is the moment the whole batch gets loaded.
        """
        meta = cls.lazy_relationships.get(relation_name)
        if meta is None:
            raise UndefinedLazyRelationshipError(cls.__name__, relation_name)

        return cls.init_lazy_relationship(executor, meta, obj).sync()

    @classmethod
    def init_all_lazy_relationships(cls, executor: BatchExecutor, obj: object, level: int = NESTING_START_LEVEL):
        """ Recursively prefetch the tree of lazy relationships

        Nothing is loaded here: the loads are only registered.
        The nesting is limited to `lazy_nesting_levels`.

        Args:
            executor: The executor to register the loads with
            obj: Lazy relationships will be prefetched for this object
            level: Current nesting level
        """
        if level >= cls.lazy_nesting_levels:
            return
        if obj is None:
            return
        if not cls.lazy_relationships:
            return

        for meta in cls.lazy_relationships.values():
            cls.init_lazy_relationship(executor, meta, obj, level)

    @classmethod
    def init_lazy_relationship(cls, executor: BatchExecutor, meta: LazyRelationshipMeta, obj: object,
                               level: int = NESTING_START_LEVEL) -> Deferred:
        """ Register the load of one lazy relationship

        When the batch is loaded, relationships of the loaded objects get prefetched one level deeper.
        """
        load_for_object = meta.target_for(obj)
        if load_for_object is None:
            return Deferred.resolved(None)

        # An object reached at different levels gets an observer for each: the shallowest one goes deepest
        return meta.loader.load(executor, load_for_object, NestedPrefetch(executor, meta, level))

    # endregion


class NestedPrefetch(NamedTuple):
    """ Observer: prefetch relationships of the loaded records one level deeper

    Observers are compared by value, so the same prefetch runs once per batch
    no matter how many serializers have registered it.
    """
    executor: BatchExecutor
    meta: LazyRelationshipMeta
    level: int

    def __call__(self, batch_records: list):
        # No serializer, no nested relationships
        serializer_class = self.meta.serializer_class
        if serializer_class is None:
            return

        for record in util.wrap(batch_records):
            serializer_class.init_all_lazy_relationships(self.executor, record, self.level + 1)


def _render(serializers: List[LazySerializer], include: Dict[str, dict]) -> List[dict]:
    """ Render serializers level by level

    A relationship is loaded for all the serializers before going one level deeper.
    """
    rendered = [serializer._render_attributes() for serializer in serializers]

    for name, nested_include in include.items():
        values = [serializer.lazy(name) for serializer in serializers]

        # Serializers for the loaded objects. Creating them prefetches their relationships
        children = []
        for serializer, value in zip(serializers, values):
            serializer_class = serializer.lazy_relationships[name].serializer_class
            if serializer_class is not None:
                children.extend(serializer_class(obj, serializer.executor) for obj in util.wrap(value))

        # Put the rendered children in their places
        rendered_children = iter(_render(children, nested_include))
        for data, serializer, value in zip(rendered, serializers, values):
            serializer_class = serializer.lazy_relationships[name].serializer_class
            if serializer_class is None or value is None:
                data[name] = value
            elif util.is_collection(value):
                data[name] = [next(rendered_children) for _ in util.wrap(value)]
            else:
                data[name] = next(rendered_children)

    return rendered


def parse_include(include) -> Dict[str, dict]:
    """ Convert an include specification into a tree

    Example:
        parse_include('posts.category,comments') == {'posts': {'category': {}}, 'comments': {}}
        parse_include(['posts.category', 'posts.user']) == {'posts': {'category': {}, 'user': {}}}
    """
    tree: Dict[str, dict] = {}
    if not include:
        return tree

    if isinstance(include, str):
        include = include.split(',')
    elif isinstance(include, Mapping):
        include = [include]

    for path in include:
        if isinstance(path, Mapping):
            for name, nested in path.items():
                _merge_include(tree.setdefault(name, {}), parse_include(nested))
        else:
            node = tree
            for name in path.strip().split('.'):
                node = node.setdefault(name, {})
    return tree


def _merge_include(tree: dict, other: dict):
    for name, nested in other.items():
        _merge_include(tree.setdefault(name, {}), nested)
