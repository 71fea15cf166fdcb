"""Hasura GraphQL client for the cardano-db-sync database.

Owns the startup sequence (schema and metadata apply, schema introspection,
background fetchers) and the read/write operations used by the API layer.
"""

import asyncio
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

import structlog
from gql import Client, GraphQLRequest
from gql.transport.aiohttp import AIOHTTPTransport

from ..common.retry import RetryPolicy
from .balances import summarize_payment_address
from .data_fetcher import DataFetcher, NotReadyError
from .hasura_cli import HasuraCli
from .models import (
    Asset,
    InsertAssetsResult,
    IntComparisonExp,
    PaymentAddressSummary,
    ProtocolVersion,
    SyncMeta,
    TransactionOutput,
)
from .schema_sync import Executor, HttpExecutor, SchemaSynchronizer, ValidatedSchema

logger = structlog.get_logger()

DEFAULT_ROLE = "cardano-graphql"
PROTOCOL_VERSION_POLLING_INTERVAL = 1000 * 60  # ms


ADA_CIRCULATING_SUPPLY_QUERY = """
query {
    rewards_aggregate {
        aggregate { sum { amount } }
    }
    utxos_aggregate {
        aggregate { sum { value } }
    }
    withdrawals_aggregate {
        aggregate { sum { amount } }
    }
}
"""

CURRENT_PROTOCOL_VERSION_QUERY = """
query {
    epochs (limit: 1, order_by: { number: desc }) {
        protocolParams {
            protocolVersion
        }
    }
}
"""

PAYMENT_ADDRESS_SUMMARY_QUERY = """
query PaymentAddressSummary (
    $address: String!
    $atBlock: Int
) {
    utxos (
        where: {
            _and: {
                address: { _eq: $address },
                transaction: { block: { number: { _lte: $atBlock }}}
            }
        }
    ) {
        value
        tokens {
            asset {
                assetId
                assetName
                description
                fingerprint
                logo
                metadataHash
                name
                ticker
                url
                policyId
            }
            quantity
        }
    }
    utxos_aggregate (
        where: {
            _and: {
                address: { _eq: $address },
                transaction: { block: { number: { _lte: $atBlock }}}
            }
        }
    ) {
        aggregate { count }
    }
}
"""

META_QUERY = """
query {
    epochs (limit: 1, order_by: { number: desc }) {
        number
    }
    cardano {
        tip {
            epoch { number }
            number
            forgedAt
        }
    }
}
"""

DISTINCT_ASSETS_IN_TOKENS_QUERY = """
query DistinctAssetsInTokens (
    $limit: Int
    $offset: Int
) {
    tokens (
        distinct_on: assetId
        limit: $limit
        order_by: { assetId: asc }
        offset: $offset
    ) {
        assetId
        assetName
        policyId
    }
}
"""

DISTINCT_ASSETS_IN_TOKENS_COUNT_QUERY = """
query {
    tokens_aggregate (distinct_on: assetId) {
        aggregate { count }
    }
}
"""

ASSETS_ELIGIBLE_FOR_METADATA_REFRESH_COUNT_QUERY = """
query AssetsEligibleForMetadataRefreshCount (
    $metadataFetchAttempts: Int_comparison_exp!
) {
    assets_aggregate (
        where: { metadataFetchAttempts: $metadataFetchAttempts }
    ) {
        aggregate { count }
    }
}
"""

ASSETS_INC_METADATA_QUERY = """
query AssetsIncMetadata (
    $metadataFetchAttempts: Int_comparison_exp
    $limit: Int
    $offset: Int
) {
    assets (
        limit: $limit
        offset: $offset
        where: { metadataFetchAttempts: $metadataFetchAttempts }
    ) {
        assetId
        assetName
        description
        name
        policyId
    }
}
"""

ASSETS_WITHOUT_FINGERPRINT_COUNT_QUERY = """
query {
    assets_aggregate (
        where: { fingerprint: { _is_null: true }}
    ) {
        aggregate { count }
    }
}
"""

ASSETS_BY_ID_QUERY = """
query AssetsById (
    $assetIds: [String!]!
) {
    assets (
        where: { assetId: { _in: $assetIds }}
    ) {
        assetId
    }
}
"""

ASSETS_WITHOUT_FINGERPRINT_QUERY = """
query AssetsWithoutFingerprint (
    $limit: Int
) {
    assets (
        limit: $limit
        order_by: { assetId: asc }
        where: { fingerprint: { _is_null: true }}
    ) {
        assetId
        assetName
        policyId
    }
}
"""

ASSETS_WITHOUT_METADATA_COUNT_QUERY = """
query AssetsWithoutMetadataCount (
    $metadataFetchAttempts: Int_comparison_exp!
) {
    assets_aggregate (
        where: {
            _and: [
                { metadataFetchAttempts: $metadataFetchAttempts },
                { metadataHash: { _is_null: true }}
            ]
        }
    ) {
        aggregate { count }
    }
}
"""

ASSETS_WITHOUT_METADATA_QUERY = """
query AssetsWithoutMetadata (
    $limit: Int
    $metadataFetchAttempts: Int_comparison_exp!
    $offset: Int
) {
    assets (
        limit: $limit
        order_by: { assetId: asc }
        offset: $offset
        where: {
            _and: [
                { metadataFetchAttempts: $metadataFetchAttempts },
                { metadataHash: { _is_null: true }}
            ]
        }
    ) {
        assetId
        metadataFetchAttempts
    }
}
"""

ADD_ASSET_FINGERPRINTS_MUTATION = """
mutation AddAssetFingerprint($assets: [Asset_insert_input!]!) {
    insert_assets(
        objects: $assets,
        on_conflict: {
            constraint: Asset_pkey,
            update_columns: [fingerprint]
        }
    ) {
        returning { assetId }
    }
}
"""

ADD_METADATA_MUTATION = """
mutation AddAssetMetadata($assets: [Asset_insert_input!]!) {
    insert_assets(
        objects: $assets,
        on_conflict: {
            constraint: Asset_pkey,
            update_columns: [
                description,
                logo,
                metadataHash,
                name,
                ticker,
                url
            ]
        }
    ) {
        returning { assetId }
    }
}
"""

INCREMENT_METADATA_FETCH_ATTEMPTS_MUTATION = """
mutation IncrementAssetMetadataFetchAttempt(
    $assetIds: [String!]!
) {
    update_assets(
        where: { assetId: { _in: $assetIds }},
        _inc: { metadataFetchAttempts: 1 }
    ) {
        returning {
            assetId
            metadataFetchAttempts
        }
    }
}
"""

INSERT_ASSETS_MUTATION = """
mutation InsertAssets($assets: [Asset_insert_input!]!) {
    insert_assets(objects: $assets) {
        returning {
            name
            policyId
            description
            assetName
            assetId
        }
        affected_rows
    }
}
"""

METADATA_FIELDS = {"asset_id", "description", "logo", "metadata_hash", "name", "ticker", "url"}


class HasuraQueryError(Exception):
    """Raised when a query or mutation against Hasura fails."""
    pass


def _to_int(value: Union[int, str, None]) -> int:
    # numeric aggregates arrive as strings or JSON numbers
    return int(Decimal(str(value)))


def hash28_hex(value: str) -> str:
    """Normalise a bytea policy id (``\\x``-prefixed) to plain lowercase hex."""
    if value.startswith("\\x"):
        value = value[2:]
    return value.lower()


class HasuraClient:
    """Client for the cardano-db-sync Hasura gateway."""

    def __init__(
        self,
        hasura_cli_path: str,
        hasura_uri: str,
        polling_interval: int,
        last_configured_major_version: int,
        project_dir: str = "./hasura/project",
        role: str = DEFAULT_ROLE,
        protocol_version_polling_interval: int = PROTOCOL_VERSION_POLLING_INTERVAL,
        retry_policy: Optional[RetryPolicy] = None,
        executor: Optional[Executor] = None,
        timeout: int = 30,
        sleep=asyncio.sleep,
    ):
        """Initialize Hasura client.

        Args:
            hasura_cli_path: Path to the hasura CLI binary
            hasura_uri: Base URI of the Hasura server
            polling_interval: Circulating supply refresh period in milliseconds
            last_configured_major_version: Major protocol version from the node config
            project_dir: Hasura project holding migrations and metadata
            role: Value of the X-Hasura-Role header
            protocol_version_polling_interval: Protocol version refresh period in milliseconds
            retry_policy: Backoff schedule for schema apply and introspection
            executor: Introspection transport (defaults to HTTP)
            timeout: Request timeout in seconds
            sleep: Awaitable used between retry attempts
        """
        self.hasura_uri = hasura_uri.rstrip("/")
        self.graphql_url = f"{self.hasura_uri}/v1/graphql"
        self.last_configured_major_version = last_configured_major_version
        self.role = role
        self.timeout = timeout

        self.logger = logger.bind(component="hasura_client")

        self.cli = HasuraCli(hasura_cli_path, project_dir, self.hasura_uri)
        self.schema_sync = SchemaSynchronizer(
            self.cli,
            executor or HttpExecutor(self.graphql_url, role, timeout),
            retry_policy=retry_policy,
            sleep=sleep,
        )

        self.ada_circulating_supply_fetcher: DataFetcher[str] = DataFetcher(
            "AdaCirculatingSupply",
            self.get_ada_circulating_supply,
            polling_interval,
        )
        self.current_protocol_version_fetcher: DataFetcher[ProtocolVersion] = DataFetcher(
            "ProtocolParams",
            self._fetch_current_protocol_version,
            protocol_version_polling_interval,
        )

    @classmethod
    def from_settings(cls, settings) -> "HasuraClient":
        return cls(
            hasura_cli_path=settings.hasura_cli_path,
            hasura_uri=settings.hasura_uri,
            polling_interval=settings.ada_supply_polling_interval,
            last_configured_major_version=settings.last_configured_major_version,
            project_dir=settings.hasura_project_dir,
            role=settings.hasura_role,
            protocol_version_polling_interval=settings.protocol_version_polling_interval,
            retry_policy=RetryPolicy.from_settings(settings),
            timeout=settings.http_timeout,
        )

    @property
    def schema(self) -> Optional[ValidatedSchema]:
        return self.schema_sync.schema

    async def initialize(self) -> None:
        """Apply schema and metadata, build the schema, then start fetchers."""
        self.logger.info("initializing")
        await self.schema_sync.apply_schema_and_metadata()
        await self.schema_sync.build_schema()
        self.logger.info("initialized")
        await self.current_protocol_version_fetcher.initialize()
        await self.ada_circulating_supply_fetcher.initialize()

    async def shutdown(self) -> None:
        await self.ada_circulating_supply_fetcher.shutdown()
        await self.current_protocol_version_fetcher.shutdown()

    async def apply_schema_and_metadata(self) -> bool:
        return await self.schema_sync.apply_schema_and_metadata()

    def _make_transport(self) -> AIOHTTPTransport:
        return AIOHTTPTransport(
            url=self.graphql_url,
            headers={"X-Hasura-Role": self.role},
            timeout=self.timeout,
        )

    async def _query(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute a GraphQL query or mutation against Hasura.

        Args:
            query: GraphQL document
            variables: Query variables

        Returns:
            The ``data`` member of the response

        Raises:
            HasuraQueryError: If the request fails
        """
        request = GraphQLRequest(query, variable_values=variables or {})
        try:
            async with Client(
                transport=self._make_transport(),
                fetch_schema_from_transport=False,
            ) as session:
                return await session.execute(request)
        except Exception as e:
            self.logger.error("hasura_query_failed", error=str(e), query=query.strip()[:100])
            raise HasuraQueryError(f"Hasura query failed: {e}") from e

    async def get_ada_circulating_supply(self) -> str:
        """Lovelace in UTXOs plus rewards not yet withdrawn.

        Raises:
            NotReadyError: While db-sync has not indexed rewards or UTXOs
        """
        data = await self._query(ADA_CIRCULATING_SUPPLY_QUERY)
        rewards = data["rewards_aggregate"]["aggregate"]["sum"]["amount"]
        utxos = data["utxos_aggregate"]["aggregate"]["sum"]["value"]
        withdrawals = data["withdrawals_aggregate"]["aggregate"]["sum"]["amount"]

        if rewards is None or utxos is None:
            raise NotReadyError(
                "Circulating supply is only available once rewards and UTXOs are indexed"
            )

        withdrawable_rewards = _to_int(rewards) - _to_int(withdrawals or 0)
        return str(_to_int(utxos) + withdrawable_rewards)

    async def get_current_protocol_version(self) -> ProtocolVersion:
        """Protocol version of the latest epoch.

        Raises:
            NotReadyError: If no epoch with protocol parameters is indexed yet
        """
        data = await self._query(CURRENT_PROTOCOL_VERSION_QUERY)
        epochs = data.get("epochs") or []
        if not epochs or not epochs[0].get("protocolParams"):
            raise NotReadyError("No epoch protocol parameters indexed yet")
        return ProtocolVersion.model_validate(epochs[0]["protocolParams"]["protocolVersion"])

    async def _fetch_current_protocol_version(self) -> ProtocolVersion:
        protocol_version = await self.get_current_protocol_version()
        self.logger.debug("current_protocol_version", value=protocol_version.model_dump())
        return protocol_version

    def is_in_current_era(self) -> bool:
        protocol_version = self.current_protocol_version_fetcher.value
        self.logger.debug(
            "comparing_protocol_version",
            current_protocol_version=protocol_version.model_dump(),
            last_configured_major_version=self.last_configured_major_version,
        )
        return protocol_version.major >= self.last_configured_major_version

    async def get_payment_address_summary(
        self,
        address: str,
        at_block: Optional[int] = None,
    ) -> PaymentAddressSummary:
        """Balances per asset held by ``address``, optionally as of ``at_block``."""
        data = await self._query(
            PAYMENT_ADDRESS_SUMMARY_QUERY,
            {"address": address, "atBlock": at_block},
        )
        utxos = [TransactionOutput.model_validate(utxo) for utxo in data["utxos"]]
        return summarize_payment_address(
            utxos,
            data["utxos_aggregate"]["aggregate"]["count"],
        )

    async def get_meta(self, node_tip_block_number: int) -> SyncMeta:
        """Sync progress of db-sync against the node tip.

        Raises:
            ValueError: If ``node_tip_block_number`` is not positive
        """
        if node_tip_block_number <= 0:
            raise ValueError(f"node_tip_block_number must be positive, got {node_tip_block_number}")

        data = await self._query(META_QUERY)
        cardano = data.get("cardano") or []
        tip = (cardano[0].get("tip") if cardano else None) or {}
        epochs = data.get("epochs") or []
        last_epoch_number = epochs[0]["number"] if epochs else None
        tip_epoch = tip.get("epoch") or {}
        # No block indexed yet early in the initial sync
        tip_number = tip.get("number") or 0

        # db-sync writes the epoch record at the end of each epoch during bulk
        # sync, so the last epoch only matches the tip once sync has caught up
        return SyncMeta(
            initialized=last_epoch_number is not None and last_epoch_number == tip_epoch.get("number"),
            syncPercentage=(tip_number / node_tip_block_number) * 100,
        )

    async def get_distinct_assets_in_tokens(
        self,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Asset]:
        data = await self._query(
            DISTINCT_ASSETS_IN_TOKENS_QUERY,
            {"limit": limit, "offset": offset},
        )
        return [Asset.model_validate(row) for row in data["tokens"]]

    async def distinct_assets_in_tokens_count(self) -> int:
        data = await self._query(DISTINCT_ASSETS_IN_TOKENS_COUNT_QUERY)
        return data["tokens_aggregate"]["aggregate"]["count"]

    async def assets_eligible_for_metadata_refresh_count(
        self,
        metadata_fetch_attempts: IntComparisonExp,
    ) -> int:
        data = await self._query(
            ASSETS_ELIGIBLE_FOR_METADATA_REFRESH_COUNT_QUERY,
            {"metadataFetchAttempts": metadata_fetch_attempts},
        )
        return data["assets_aggregate"]["aggregate"]["count"]

    async def get_assets_inc_metadata(
        self,
        metadata_fetch_attempts: IntComparisonExp,
        limit: int,
        offset: int,
    ) -> List[Asset]:
        data = await self._query(
            ASSETS_INC_METADATA_QUERY,
            {"metadataFetchAttempts": metadata_fetch_attempts, "limit": limit, "offset": offset},
        )
        return [Asset.model_validate(row) for row in data["assets"]]

    async def has_assets_without_fingerprint(self) -> bool:
        data = await self._query(ASSETS_WITHOUT_FINGERPRINT_COUNT_QUERY)
        count = _to_int(data["assets_aggregate"]["aggregate"]["count"])
        self.logger.debug("assets_without_fingerprint", count=count)
        return count > 0

    async def get_assets_by_id(self, asset_ids: List[str]) -> List[Asset]:
        data = await self._query(ASSETS_BY_ID_QUERY, {"assetIds": asset_ids})
        return [Asset.model_validate(row) for row in data["assets"]]

    async def get_assets_without_fingerprint(self, limit: Optional[int] = None) -> List[Asset]:
        data = await self._query(ASSETS_WITHOUT_FINGERPRINT_QUERY, {"limit": limit})
        assets = []
        for row in data["assets"]:
            asset = Asset.model_validate(row)
            if asset.policy_id is not None:
                asset.policy_id = hash28_hex(asset.policy_id)
            assets.append(asset)
        return assets

    async def assets_without_metadata_count(self, metadata_fetch_attempts: IntComparisonExp) -> int:
        data = await self._query(
            ASSETS_WITHOUT_METADATA_COUNT_QUERY,
            {"metadataFetchAttempts": metadata_fetch_attempts},
        )
        return data["assets_aggregate"]["aggregate"]["count"]

    async def get_assets_without_metadata(
        self,
        metadata_fetch_attempts: IntComparisonExp,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Asset]:
        data = await self._query(
            ASSETS_WITHOUT_METADATA_QUERY,
            {"metadataFetchAttempts": metadata_fetch_attempts, "limit": limit, "offset": offset},
        )
        return [Asset.model_validate(row) for row in data["assets"]]

    async def add_asset_fingerprints(self, assets: List[Asset]) -> List[str]:
        """Upsert fingerprints; returns the affected asset ids."""
        self.logger.debug("adding_asset_fingerprints", count=len(assets))
        data = await self._query(
            ADD_ASSET_FINGERPRINTS_MUTATION,
            {
                "assets": [
                    asset.model_dump(by_alias=True, include={"asset_id", "fingerprint"})
                    for asset in assets
                ]
            },
        )
        return [row["assetId"] for row in data["insert_assets"]["returning"]]

    async def add_metadata(self, assets: List[Asset]) -> List[str]:
        """Upsert off-chain metadata; returns the affected asset ids."""
        self.logger.info("adding_asset_metadata", count=len(assets))
        data = await self._query(
            ADD_METADATA_MUTATION,
            {
                "assets": [
                    asset.model_dump(by_alias=True, include=METADATA_FIELDS)
                    for asset in assets
                ]
            },
        )
        return [row["assetId"] for row in data["insert_assets"]["returning"]]

    async def increment_metadata_fetch_attempts(self, asset_ids: List[str]) -> List[Asset]:
        self.logger.info("incrementing_metadata_fetch_attempts", count=len(asset_ids))
        data = await self._query(
            INCREMENT_METADATA_FETCH_ATTEMPTS_MUTATION,
            {"assetIds": asset_ids},
        )
        return [Asset.model_validate(row) for row in data["update_assets"]["returning"]]

    async def insert_assets(self, assets: List[Asset]) -> InsertAssetsResult:
        self.logger.debug("inserting_assets", count=len(assets))
        data = await self._query(
            INSERT_ASSETS_MUTATION,
            {"assets": [asset.model_dump(by_alias=True, exclude_none=True) for asset in assets]},
        )
        return InsertAssetsResult.model_validate(data["insert_assets"])
