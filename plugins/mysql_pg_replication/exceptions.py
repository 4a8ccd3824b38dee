"""Exceptions raised by the replication engine."""


class ReplicationError(Exception):
    """Base class for replication engine errors."""


class SchemaError(ReplicationError):
    """Target table missing or DDL could not be applied."""


class DependencyCycleError(ReplicationError, ValueError):
    """Foreign keys between the selected tables form a cycle."""

    def __init__(self, cycle):
        self.cycle = list(cycle)
        super().__init__(
            "Foreign key cycle detected between tables: " + " -> ".join(self.cycle)
        )


class MemoryLimitExceeded(ReplicationError):
    """Daemon process grew beyond the configured memory ceiling."""

    def __init__(self, usage_mb: float, limit_mb: int):
        self.usage_mb = usage_mb
        self.limit_mb = limit_mb
        super().__init__(
            f"Memory limit exceeded ({usage_mb:.2f}MB > {limit_mb}MB)"
        )
