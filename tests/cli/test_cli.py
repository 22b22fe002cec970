"""
Tests for the isx-spine CLI.
"""

from __future__ import annotations

import json

from typer.testing import CliRunner

from isx_spine import __version__
from isx_spine.cli.app import app

runner = CliRunner()


class TestRootApp:
    def test_help(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "serve" in result.output
        assert "types" in result.output

    def test_version_flag(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert result.output.strip() == f"isx-spine {__version__}"

    def test_version_command(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        # Typer returns exit code 0 or 2 for no_args_is_help
        assert result.exit_code in (0, 2)


class TestTypes:
    def test_json_output(self):
        result = runner.invoke(app, ["types", "--json"])
        assert result.exit_code == 0

        rows = json.loads(result.output)
        by_id = {row["id"]: row for row in rows}
        assert by_id["full_pipeline"]["steps"] == ["scraping", "processing", "indices", "liquidity"]
        assert by_id["scraping"]["category"] == "step"

    def test_table_output(self):
        result = runner.invoke(app, ["types"])
        assert result.exit_code == 0
        assert "Operation types" in result.output

    def test_serve_help(self):
        result = runner.invoke(app, ["serve", "--help"])
        assert result.exit_code == 0
        assert "--port" in result.output
