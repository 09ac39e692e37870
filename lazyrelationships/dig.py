""" Dig through a chain of lazy relationships, like dict.get().get(), but with batch loading """

from typing import Any, List, Optional, Tuple

from funcy import first

from . import util
from .batch import BatchExecutor
from .exc import LazyRelationshipError, UndefinedLazyRelationshipError


def lazy_dig(executor: BatchExecutor, serializer_class: type, obj: object, *relation_names: str) -> Any:
    """ Dig through a sequence of nested lazy relationships

    Every relationship is loaded for all the objects found on the previous step at once.
    Objects are flattened across steps, and Nones are dropped.

    Args:
        executor: The executor to load the relationships with
        serializer_class: The serializer for `obj`
        obj: The object to start with
        relation_names: The sequence of relationship names to dig through

    Returns:
        If every relationship in the chain returned a single object: the object, or None.
        If any relationship returned a collection: a list of objects.

    Example:
        class AuthorSerializer(LazySerializer):
            address = lazy_relationship(SimpleBelongsTo(Address))
            rewards = lazy_relationship(SimpleHasMany(Reward, 'author_id'))

        class BlogPostSerializer(LazySerializer):
            author = lazy_relationship(serializer=AuthorSerializer)

        lazy_dig(executor, BlogPostSerializer, post, 'author', 'address')  # -> Address | None
        lazy_dig(executor, BlogPostSerializer, post, 'author', 'rewards')  # -> [Reward, ...]
    """
    multiple = False
    relationships: List[Tuple[Optional[type], object]] = [(serializer_class, obj)]

    for relation_name in relation_names:
        # Register the loads for every object first, then evaluate them: one batch for them all
        deferreds = []
        for serializer, current_object in relationships:
            if serializer is None:
                raise LazyRelationshipError(
                    f"Can't dig '{relation_name}' on {type(current_object).__name__}: "
                    f"the relationship it was loaded from has no serializer"
                )

            meta = serializer.lazy_relationships.get(relation_name)
            if meta is None:
                raise UndefinedLazyRelationshipError(serializer.__name__, relation_name)

            deferreds.append((meta, serializer.init_lazy_relationship(executor, meta, current_object)))

        next_relationships = []
        for meta, deferred in deferreds:
            next_objects = deferred.sync()
            if next_objects is None:
                continue

            multiple = multiple or util.is_collection(next_objects)

            next_serializer = meta.serializer_class
            next_relationships.extend(
                (next_serializer, next_object)
                for next_object in util.wrap(next_objects)
                if next_object is not None
            )

        relationships = next_relationships

    objects = [obj for serializer, obj in relationships]
    return objects if multiple else first(objects)
