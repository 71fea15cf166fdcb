"""Schema synchronization and read/write client for the cardano-db-sync Hasura gateway."""

__version__ = "0.1.0"
