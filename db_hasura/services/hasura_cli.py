"""Async wrapper around the Hasura CLI used for migrations and metadata."""

import asyncio
import os
from typing import List, Optional

import structlog

logger = structlog.get_logger()


class HasuraCliError(Exception):
    """Raised when a Hasura CLI command exits with a non-zero status."""

    def __init__(self, command: str, returncode: int, output: str = ""):
        self.command = command
        self.returncode = returncode
        self.output = output
        message = f"hasura {command} exited with status {returncode}"
        if output:
            message = f"{message}: {output}"
        super().__init__(message)


class HasuraCli:
    """Runs ``hasura`` commands against one project and endpoint."""

    def __init__(self, cli_path: str, project_dir: str, endpoint: str):
        """Initialize CLI runner.

        Args:
            cli_path: Path to the hasura binary
            project_dir: Hasura project directory holding migrations and metadata
            endpoint: Base URI of the Hasura server
        """
        self.cli_path = cli_path
        self.project_dir = os.path.abspath(project_dir)
        self.endpoint = endpoint

        self.logger = logger.bind(component="hasura_cli")

    def build_args(self, command: str) -> List[str]:
        return [
            self.cli_path,
            "--skip-update-check",
            "--project",
            self.project_dir,
            "--endpoint",
            self.endpoint,
            *command.split(),
        ]

    async def run(self, command: str) -> Optional[str]:
        """Run one CLI command, e.g. ``"migrate apply --up all"``.

        Returns:
            Captured stdout

        Raises:
            HasuraCliError: If the command fails
        """
        log = self.logger.bind(command=command)
        log.debug("hasura_cli_started")

        process = await asyncio.create_subprocess_exec(
            *self.build_args(command),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        output = stdout.decode("utf-8", errors="replace").strip()

        if process.returncode != 0:
            error_text = stderr.decode("utf-8", errors="replace").strip() or output
            log.error("hasura_cli_failed", returncode=process.returncode, error=error_text)
            raise HasuraCliError(command, process.returncode, error_text)

        log.debug("hasura_cli_completed", output=output)
        return output
