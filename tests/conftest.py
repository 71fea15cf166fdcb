import sys
import pytest
from pathlib import Path
from unittest.mock import patch

from graphql import build_schema, introspection_from_schema


# Ensure the project root (containing the db_hasura package) is importable.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from db_hasura.common.retry import RetryPolicy  # noqa: E402
from db_hasura.services.hasura_client import HasuraClient  # noqa: E402


CARDANO_SDL = """
type Block {
    hash: String
    number: Int
}

type Epoch {
    number: Int
}

type Transaction {
    hash: String
    block: Block
}

type Cardano {
    tip: Block
}

type Query {
    blocks: [Block]
    cardano: [Cardano]
    epochs: [Epoch]
    transactions: [Transaction]
}
"""


@pytest.fixture
def make_introspection():
    """Build an introspection ``data`` payload from SDL"""
    def _make(sdl: str = CARDANO_SDL):
        return introspection_from_schema(build_schema(sdl))
    return _make


@pytest.fixture
def introspection_result(make_introspection):
    """Introspection payload exposing every required Cardano type"""
    return make_introspection()


@pytest.fixture
def recorded_sleeps():
    """Sleep replacement that records requested delays instead of waiting"""
    delays = []

    async def _sleep(delay):
        delays.append(delay)

    _sleep.delays = delays
    return _sleep


@pytest.fixture
def fast_policy():
    """Retry policy with no waiting between attempts"""
    return RetryPolicy(backoff_factor=1.75, max_attempts=3, min_delay=0)


@pytest.fixture
def hasura_client(fast_policy, recorded_sleeps):
    """HasuraClient wired to local defaults with instant retries"""
    return HasuraClient(
        hasura_cli_path="hasura",
        hasura_uri="http://localhost:8090",
        polling_interval=60000,
        last_configured_major_version=2,
        retry_policy=fast_policy,
        sleep=recorded_sleeps,
    )


@pytest.fixture
def temp_log_dir(tmp_path):
    """Create temporary log directory for tests"""
    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    return log_dir


@pytest.fixture
def mock_settings(temp_log_dir):
    """Mock settings for tests"""
    with patch('db_hasura.common.config.settings') as mock_settings:
        mock_settings.hasura_uri = "http://localhost:8090"
        mock_settings.hasura_cli_path = "hasura"
        mock_settings.hasura_project_dir = "./hasura/project"
        mock_settings.hasura_role = "cardano-graphql"
        mock_settings.ada_supply_polling_interval = 60000
        mock_settings.protocol_version_polling_interval = 60000
        mock_settings.last_configured_major_version = 2
        mock_settings.retry_backoff_factor = 1.75
        mock_settings.retry_max_attempts = 3
        mock_settings.retry_min_delay = 0.0
        mock_settings.http_timeout = 30
        mock_settings.log_level = "INFO"
        mock_settings.log_dir = str(temp_log_dir)
        yield mock_settings
