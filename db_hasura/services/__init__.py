"""Hasura gateway services.

This module provides the schema synchronizer, the background data fetchers
and the GraphQL client built on them.
"""

from .data_fetcher import (
    DataFetcher,
    FetcherNotInitializedError,
    FetcherState,
    FetcherStateError,
    NotReadyError,
)
from .hasura_cli import HasuraCli, HasuraCliError
from .schema_sync import (
    HttpExecutor,
    SchemaIntrospectionError,
    SchemaSynchronizer,
    SchemaValidationError,
    SyncState,
    ValidatedSchema,
)
from .balances import ADA_ASSET_ID, aggregate_asset_balances, summarize_payment_address
from .hasura_client import HasuraClient, HasuraQueryError

__all__ = [
    # Clients
    'HasuraClient',
    'HasuraQueryError',
    'HasuraCli',
    'HasuraCliError',
    'HttpExecutor',

    # Schema
    'SchemaSynchronizer',
    'SchemaIntrospectionError',
    'SchemaValidationError',
    'SyncState',
    'ValidatedSchema',

    # Fetchers
    'DataFetcher',
    'FetcherState',
    'FetcherStateError',
    'FetcherNotInitializedError',
    'NotReadyError',

    # Balances
    'ADA_ASSET_ID',
    'aggregate_asset_balances',
    'summarize_payment_address',
]
