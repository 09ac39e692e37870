from sqlalchemy.exc import InvalidRequestError


class LazyRelationshipError(InvalidRequestError):
    """ Base class for lazy relationship errors """


class UndefinedLazyRelationshipError(LazyRelationshipError):
    """ A lazy relationship is requested by a name the serializer does not declare

    This is almost always a typo in the serializer, or in a lazy_dig() chain.
    """

    serializer_name: str
    relationship_name: str

    def __init__(self, serializer_name, relationship_name):
        self.serializer_name = serializer_name
        self.relationship_name = relationship_name
        super().__init__(f"Undefined lazy '{self.relationship_name}' relationship for '{self.serializer_name}' serializer")


class BatchReentryError(LazyRelationshipError):
    """ A deferred value was synced from within its own batch callback """

    def __init__(self, key):
        self.key = key
        super().__init__(f"Batch {key!r} is being loaded; cannot sync its values from within the batch itself")
