from __future__ import annotations

from contextlib import closing, contextmanager
from typing import ContextManager, List

import pytest
import sqlalchemy as sa
import sqlalchemy.orm

from lazyrelationships import BatchExecutor
from . import models
from .query_logger import QueryLogger


@pytest.fixture()
def ssn(engine: sa.engine.Engine) -> sa.orm.Session:
    # Clean the DB
    models.Base.metadata.drop_all(bind=engine)
    models.Base.metadata.create_all(bind=engine)

    # New session
    SessionMaker = sa.orm.sessionmaker(autoflush=False, bind=engine)

    with closing(SessionMaker()) as ssn:
        yield ssn


@pytest.fixture()
def executor() -> BatchExecutor:
    executor = BatchExecutor()
    yield executor
    executor.clear()


@pytest.fixture()
def blog(ssn: sa.orm.Session):
    """ Users, posts, categories, followers, comments, messages

    * User 1 has posts 11, 12, 13 (categories 1, 2, 3) and 14 (no category)
    * User 2 has no posts
    * Categories 1, 2, 3 have 2 followers each; category 4 has none
    * Comment 31 is on post 11 by user 1; comment 32 has no post and no user
    * Message 41 is from user 1 to user 2
    """
    from .models import User, BlogPost, Category, CategoryFollower, Comment, Message
    ssn.add_all([
        User(id=1, name='alice'),
        User(id=2, name='bob'),
        Category(id=1, name='cats'),
        Category(id=2, name='dogs'),
        Category(id=3, name='fish'),
        Category(id=4, name='void'),
    ])
    ssn.flush()
    ssn.add_all([
        BlogPost(id=11, title='meow', user_id=1, category_id=1),
        BlogPost(id=12, title='woof', user_id=1, category_id=2),
        BlogPost(id=13, title='blub', user_id=1, category_id=3),
        BlogPost(id=14, title='misc', user_id=1, category_id=None),
        CategoryFollower(id=101, category_id=1),
        CategoryFollower(id=102, category_id=1),
        CategoryFollower(id=103, category_id=2),
        CategoryFollower(id=104, category_id=2),
        CategoryFollower(id=105, category_id=3),
        CategoryFollower(id=106, category_id=3),
    ])
    ssn.flush()
    ssn.add_all([
        Comment(id=31, body='first', blog_post_id=11, user_id=1),
        Comment(id=32, body='orphan', blog_post_id=None, user_id=None),
        Message(id=41, body='hi', sender_id=1, recipient_id=2),
    ])
    ssn.commit()

    # Start clean: tests load whatever they need
    ssn.expunge_all()


@pytest.fixture(
    scope='module',
    params=[
        'sqlite://',
    ]
)
def engine(request) -> sa.engine.Engine:
    DB_URL = request.param
    return sa.create_engine(DB_URL, echo=False)


# region Helpers

def load_all(ssn: sa.orm.Session, Model: type, *options) -> List[object]:
    """ Load all instances of a Model from the db, with options() """
    return (
        ssn.query(Model)
            .options(*options)
            .order_by(Model.id.asc())  # predictable order
            .all()
    )


def ids(objects) -> List[int]:
    """ Get ids of objects """
    return [obj.id for obj in objects]


@contextmanager
def query_logger(ssn: sa.orm.Session) -> ContextManager[QueryLogger]:
    """ Log queries, check the final count """
    query_logger = QueryLogger(ssn.bind)

    # Log
    with query_logger:
        yield query_logger

# endregion
