# src/partlens/exceptions.py


class PartlensError(Exception):
    """Base class for all partlens errors."""

    pass


class ConfigError(PartlensError):
    """Raised for unreadable configuration or a missing database URL."""

    pass


class DataSourceError(PartlensError):
    """Raised when the catalog snapshot cannot be fetched or loaded.

    Fatal: the analysis is aborted and no partial report is published.
    """

    pass


class OrphanPartitionError(PartlensError):
    """A partition references a parent that is absent from the snapshot.

    Never raised out of the engine. Instances are recorded on the affected
    node and in the report, and the node is promoted to a synthetic root.
    """

    def __init__(self, partition: str, missing_parent: str):
        self.partition = partition
        self.missing_parent = missing_parent
        super().__init__(
            f"{partition} references parent {missing_parent}, which is not in the snapshot"
        )

    def to_dict(self) -> dict[str, str]:
        return {
            "partition": self.partition,
            "missing_parent": self.missing_parent,
            "message": str(self),
        }
