"""Database exception hierarchy."""

class DatabaseError(Exception):
    """Base class for database errors."""
    pass

class DatabaseConnectionError(DatabaseError):
    """Raised when the connection pool cannot be created or used."""
    pass

class DatabaseSchemaError(DatabaseError):
    """Raised when schema loading, validation or migration fails."""
    pass
