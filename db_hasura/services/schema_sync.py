"""Schema and metadata synchronization for the Hasura gateway.

Brings the PostgreSQL schema and the Hasura metadata to the expected state
through the Hasura CLI, then introspects the gateway and checks that the
resulting GraphQL schema carries the core Cardano types.
"""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import aiohttp
import structlog
from graphql import GraphQLSchema, build_client_schema, get_introspection_query

from ..common.retry import RetryPolicy, on_failed_attempt_for, retry_with_backoff
from .hasura_cli import HasuraCli

logger = structlog.get_logger()

# Introspection transport: (document, variables) -> raw JSON response
Executor = Callable[[str, Optional[Dict[str, Any]]], Awaitable[Dict[str, Any]]]

REQUIRED_TYPES: Tuple[str, ...] = (
    "Block",
    "Cardano",
    "Epoch",
    "Transaction",
)

MIGRATION_COMMANDS = ("migrate apply --down all", "migrate apply --up all")
METADATA_COMMANDS = ("metadata clear", "metadata apply")


class SchemaIntrospectionError(Exception):
    """Raised when the introspection response carries no usable schema."""
    pass


class SchemaValidationError(Exception):
    """Raised when the remote schema lacks a required top-level type."""

    def __init__(self, missing_type: str):
        self.missing_type = missing_type
        super().__init__(f"Remote schema is missing {missing_type}")


class SyncState(Enum):
    """Whether a schema and metadata apply is in flight."""

    IDLE = "idle"
    APPLYING = "applying"


class ValidatedSchema:
    """GraphQL schema known to expose every required top-level type."""

    def __init__(self, schema: GraphQLSchema, required_types: Iterable[str] = REQUIRED_TYPES):
        for type_name in required_types:
            if schema.get_type(type_name) is None:
                raise SchemaValidationError(type_name)
        self.schema = schema

    @classmethod
    def from_introspection(
        cls,
        introspection: Dict[str, Any],
        required_types: Iterable[str] = REQUIRED_TYPES,
    ) -> "ValidatedSchema":
        """Build from the ``data`` member of an introspection response."""
        return cls(build_client_schema(introspection), required_types)

    def get_type(self, name: str):
        return self.schema.get_type(name)

    @property
    def type_names(self) -> List[str]:
        return sorted(self.schema.type_map)


class HttpExecutor:
    """Posts GraphQL documents to the gateway and returns the raw JSON body."""

    def __init__(self, url: str, role: str, timeout: int = 30):
        self.url = url
        self.headers = {
            "Content-Type": "application/json",
            "X-Hasura-Role": role,
        }
        self.timeout = aiohttp.ClientTimeout(total=timeout)

        self.logger = logger.bind(component="introspection_executor")

    async def __call__(self, document: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        payload = {"query": document, "variables": variables}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.url, json=payload, headers=self.headers) as response:
                    response.raise_for_status()
                    return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.error("introspection_request_failed", url=self.url, error=str(e))
            raise


class SchemaSynchronizer:
    """Applies migrations and metadata, then builds the validated schema."""

    def __init__(
        self,
        cli: HasuraCli,
        executor: Executor,
        retry_policy: Optional[RetryPolicy] = None,
        required_types: Iterable[str] = REQUIRED_TYPES,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize synchronizer.

        Args:
            cli: Hasura CLI runner for the project
            executor: Introspection transport
            retry_policy: Backoff schedule shared by every retried step
            required_types: Type names the remote schema must expose
            sleep: Awaitable used between retry attempts
        """
        self.cli = cli
        self.executor = executor
        self.retry_policy = retry_policy or RetryPolicy()
        self.required_types = tuple(required_types)
        self._sleep = sleep
        self._state = SyncState.IDLE
        self._schema: Optional[ValidatedSchema] = None

        self.logger = logger.bind(component="schema_sync")

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def schema(self) -> Optional[ValidatedSchema]:
        return self._schema

    async def apply_schema_and_metadata(self) -> bool:
        """Roll migrations down and up, then clear and reapply metadata.

        A call made while another apply is in flight returns immediately
        without waiting for it.

        Returns:
            True if this call ran the apply, False if it was skipped
        """
        if self._state is SyncState.APPLYING:
            self.logger.debug("schema_apply_skipped")
            return False
        self._state = SyncState.APPLYING

        try:
            await self._retry(
                lambda: self._run_commands(MIGRATION_COMMANDS),
                "Applying PostgreSQL schema migrations",
            )
            self.logger.info("schema_migrations_applied")

            await self._retry(
                lambda: self._run_commands(METADATA_COMMANDS),
                "Applying Hasura metadata",
            )
            self.logger.info("hasura_metadata_applied")
        finally:
            self._state = SyncState.IDLE

        return True

    async def build_schema(self) -> ValidatedSchema:
        """Introspect the gateway and validate the result, with retries.

        Raises:
            SchemaValidationError: Immediately, if a required type is missing
        """
        try:
            self._schema = await self._retry(
                self._introspect,
                "Fetching Hasura schema via introspection",
                fatal=(SchemaValidationError,),
            )
        except SchemaValidationError as e:
            self.logger.error("schema_incompatible", missing_type=e.missing_type)
            raise

        self.logger.info("schema_built", types=len(self._schema.type_names))
        return self._schema

    async def _introspect(self) -> ValidatedSchema:
        result = await self.executor(get_introspection_query(), None)
        if result.get("errors"):
            raise SchemaIntrospectionError(f"Introspection failed: {result['errors']}")
        data = result.get("data")
        if not data or "__schema" not in data:
            raise SchemaIntrospectionError("Introspection response has no __schema")
        return ValidatedSchema.from_introspection(data, self.required_types)

    async def _run_commands(self, commands: Iterable[str]) -> None:
        for command in commands:
            await self.cli.run(command)

    async def _retry(self, operation, description: str, fatal=()):
        policy = self.retry_policy
        if policy.on_attempt_failure is None:
            policy = policy.with_listener(on_failed_attempt_for(description, self.logger))
        return await retry_with_backoff(operation, policy, sleep=self._sleep, fatal=fatal)
