class SearchError(Exception):
    """Base class for failures of a search or lookup call."""


class EmptyScope(SearchError):
    def __init__(self, scope):
        self.scope = scope
        super().__init__(f"No text-capable columns found in {scope}")


class InvalidIdentifier(SearchError):
    def __init__(self, name, reason):
        self.name = name
        self.reason = reason
        super().__init__(f"Cannot quote identifier {name!r}: {reason}")


class ExecutionFailed(SearchError):
    """The engine rejected a catalog read, a statement or the connection."""

    def __init__(self, message, database=None, container=None):
        self.database = database
        self.container = container
        self.message = message
        where = ".".join(part for part in (database, container) if part)
        super().__init__(f"{where}: {message}" if where else message)
