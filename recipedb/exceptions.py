class RecipeDBError(Exception):
    """Base exception class for the RecipeDB toolkit."""
    pass


class DatabaseError(RecipeDBError):
    """Raised when database operations fail."""
    pass


class MigrationError(DatabaseError):
    """Raised when a schema migration cannot be applied or reverted."""

    def __init__(self, message: str, version: str = None):
        super().__init__(message)
        self.version = version


class UnsafeQueryError(RecipeDBError):
    """Raised when a statement is rejected by the query filter."""

    def __init__(self, message: str = "Unsafe query detected", query: str = None):
        super().__init__(message)
        self.query = query


class BackupError(RecipeDBError):
    """Raised when a backup cannot be created or an external dump tool fails."""

    def __init__(self, message: str, exit_code: int = None, stderr: str = None):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class RestoreError(BackupError):
    """Raised when a backup file is invalid or cannot be restored."""
    pass


class SchedulerError(RecipeDBError):
    """Raised when scheduler operations fail."""
    pass


class InvalidBackupError(RestoreError):
    """Raised when a backup file fails validation before a restore."""
    pass
