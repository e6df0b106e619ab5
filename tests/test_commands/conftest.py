"""Fixtures for CLI command tests."""

import json
import re

import pytest
from click.testing import CliRunner

from depot_mirror.__main__ import main
from depot_mirror.services import Services


class CliHarness:
    """Invokes the CLI against preconfigured services."""

    def __init__(self, services: Services):
        self.services = services
        self.runner = CliRunner()

    def invoke(self, *args: str):
        return self.runner.invoke(main, list(args), obj={"services": self.services})

    def json(self, *args: str):
        """Invoke with JSON output and decode the result."""
        result = self.invoke("-o", "json", *args)
        assert result.exit_code == 0, result.output
        return json.loads(result.output)

    def text(self, *args: str) -> tuple[int, str]:
        """Invoke with plain output, stripping ANSI codes."""
        result = self.invoke("-o", "plain", *args)
        return result.exit_code, re.sub(r'\x1b\[[0-9;]*m', '', result.output)


@pytest.fixture
def cli(app_config, http_client):
    """CLI harness with logging kept off the captured output."""
    app_config.log_level = "CRITICAL"
    services = Services(app_config, client=http_client)
    yield CliHarness(services)
    services.close()
