""" Lazy relationships for serializers: a solution to the N+1 problem when rendering a tree of objects

TL;DR
=====

What happens when you render a list of users with their posts, and every post with its category?

```python
for user in users:
    for post in user.posts:  # a query per user
        post.category  # a query per post
```

Right. If you have 100 users with 10 posts each, you'll end up with 1100 queries.

Here's the same thing with lazy relationships:

```python
from lazyrelationships import LazySerializer, lazy_relationship, SimpleBelongsTo, batch_scope

class CategorySerializer(LazySerializer):
    attributes = ('id', 'name')

class PostSerializer(LazySerializer):
    attributes = ('id', 'title')
    category = lazy_relationship(SimpleBelongsTo(Category), serializer=CategorySerializer)

class UserSerializer(LazySerializer):
    attributes = ('id', 'name')
    posts = lazy_relationship(serializer=PostSerializer)

with batch_scope() as executor:
    data = UserSerializer.as_dict_many(users, executor, include='posts.category')
```

It will make 1 query to load posts for all the users, and 1 query to load categories for all the posts.

How It Works
============

When a serializer is created, it *prefetches* its lazy relationships: for every relationship, it asks the loader
to load it, and the loader registers the object with the executor under a batch key.
Nothing is loaded yet: the loader just gives back a `Deferred` value.

When the value of a relationship is finally needed, the `Deferred` is synced.
This is when the batch is loaded: all objects registered under the same batch key get their values with one query.

When a batch is loaded, the serializer prefetches the relationships of the loaded objects as well.
This goes on up to `LAZY_NESTING_LEVELS` levels deep (3 by default). Relationships deeper than that
are still loaded when needed, but they are not batched ahead of time.

The executor is the scope of all those deferred values. Use one per request, and clear it when the request is over:

    with batch_scope() as executor:
        ...

Loaders
=======

* `Association(name)`: an SqlAlchemy relationship. If it's loaded already, it's used as is.
  Otherwise, it's bulk-loaded for every object of the batch. This is the default loader.
* `SimpleBelongsTo(Model, foreign_key=None)`: load the object that the record refers to by a foreign key.
  NULL foreign keys are not queried.
* `SimpleHasMany(Model, foreign_key)`: load the objects that refer to the record by a foreign key.
* `Direct(name, load_fn=None)`: call a function for every record. No batching, only deferring.

Roll your own by subclassing `Loader` and implementing `batch_key()` and `load_data()`.

Digging
=======

`serializer.lazy_dig('author', 'rewards')` digs through a chain of relationships just like `dict.get()` would,
but loads every step in batches. It returns one object if the chain is all singular,
and a flat list of objects otherwise.

Decorators
==========

If the serialized object is a wrapper, load the relationship for the wrapped object:

    class PostSerializer(LazySerializer):
        category = lazy_relationship(SimpleBelongsTo(Category), load_for='post')

Logging
=======

Batch loads are logged to the 'lazyrelationships.loaders.<LoaderClass>' loggers on the INFO level:

    lazyrelationships.loaders.SimpleBelongsTo: SimpleBelongsTo(Category by category_id): batch loaded 3 objects for 3 records
"""

# Serializers
from .serializer import LazySerializer, LazyRelationshipMeta, lazy_relationship, parse_include
from .serializer import LAZY_NESTING_LEVELS
from .dig import lazy_dig

# Loaders
from .loaders import Loader, Association, SimpleHasMany, SimpleBelongsTo, Direct

# Deferred values
from .batch import BatchExecutor, Deferred, DeferredState, batch_scope

# Exceptions
from .exc import LazyRelationshipError, UndefinedLazyRelationshipError, BatchReentryError

# Low-level feature
from .bulk_load import bulk_load_relationship
