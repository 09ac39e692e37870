import pytest
import sqlalchemy as sa
import sqlalchemy.orm

from lazyrelationships import BatchExecutor, lazy_dig, LazyRelationshipError, UndefinedLazyRelationshipError
from .conftest import ids, query_logger
from .models import User, BlogPost, Comment
from .serializers import UserSerializer, BlogPostSerializer, CommentSerializer


def test_dig_plural(ssn: sa.orm.Session, blog, executor: BatchExecutor):
    """ Test: a plural step gives a flat list; Nones are dropped """
    user = ssn.get(User, 1)

    with query_logger(ssn) as ql:
        categories = UserSerializer(user, executor).lazy_dig('blog_posts', 'category')

        assert ql.matching('blog_posts') == 1
        assert ql.matching('categories') == 1

    # Post 14 has no category
    assert ids(categories) == [1, 2, 3]


def test_dig_plural_empty(ssn: sa.orm.Session, blog, executor: BatchExecutor):
    """ Test: an empty collection still gives a list """
    user = ssn.get(User, 2)

    with query_logger(ssn) as ql:
        assert UserSerializer(user, executor).lazy_dig('blog_posts', 'category') == []
        assert ql.queries == 1


def test_dig_singular(ssn: sa.orm.Session, blog, executor: BatchExecutor):
    """ Test: a chain of singular steps gives one object, or None """
    comment, orphan = ssn.get(Comment, 31), ssn.get(Comment, 32)

    with query_logger(ssn) as ql:
        category = CommentSerializer(comment, executor).lazy_dig('blog_post', 'category')
        assert category.id == 1
        assert ql.queries == 2

        # The chain ends early: no post
        assert CommentSerializer(orphan, executor).lazy_dig('blog_post', 'category') is None
        assert ql.queries == 2


def test_dig_singular_then_plural(ssn: sa.orm.Session, blog, executor: BatchExecutor):
    """ Test: one plural step is enough to get a list """
    comment = ssn.get(Comment, 31)

    with query_logger(ssn) as ql:
        posts = CommentSerializer(comment, executor).lazy_dig('user', 'blog_posts')
        assert ql.queries == 2

    assert ids(posts) == [11, 12, 13, 14]


def test_dig_every_step_is_one_batch(ssn: sa.orm.Session, blog, executor: BatchExecutor):
    """ Test: followers are 3 levels deep, beyond the prefetch; still loaded with one query """
    user = ssn.get(User, 1)

    with query_logger(ssn) as ql:
        followers = lazy_dig(executor, UserSerializer, user, 'blog_posts', 'category', 'followers')

        assert ql.matching('blog_posts') == 1
        assert ql.matching('categories') == 1
        assert ql.matching('category_followers') == 1
        assert ql.queries == 3

    assert sorted(ids(followers)) == [101, 102, 103, 104, 105, 106]


def test_dig_nothing(ssn: sa.orm.Session, blog, executor: BatchExecutor):
    user = ssn.get(User, 1)
    assert lazy_dig(executor, UserSerializer, user) is user


def test_dig_typo(ssn: sa.orm.Session, blog, executor: BatchExecutor):
    user = ssn.get(User, 1)

    with pytest.raises(UndefinedLazyRelationshipError) as e:
        UserSerializer(user, executor).lazy_dig('blog_posts', 'categroy')

    assert e.value.serializer_name == 'BlogPostSerializer'
    assert e.value.relationship_name == 'categroy'


def test_dig_past_leaf(ssn: sa.orm.Session, blog, executor: BatchExecutor):
    """ Test: can't dig into objects loaded by a relationship without a serializer """
    post = ssn.get(BlogPost, 11)

    with pytest.raises(LazyRelationshipError, match="Can't dig 'length'"):
        lazy_dig(executor, BlogPostSerializer, post, 'shout', 'length')
