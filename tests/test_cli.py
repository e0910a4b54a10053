"""
Tests for configuration and the command line
"""

import json

import pytest

from impound_rail.cli import main
from impound_rail.config import DEFAULT_API_KEY, load_settings


class TestSettings:
    """Environment-driven settings."""

    def test_defaults(self):
        settings = load_settings({})

        assert settings.api_key == DEFAULT_API_KEY
        assert settings.gateway_secret is None
        assert settings.municipality.currency == "FCFA"
        assert settings.load_tariffs().version == "cotonou-2024.1"

    def test_overrides(self):
        settings = load_settings({
            "PUBLIC_BASE_URL": "https://fourriere.example/",
            "GATEWAY_SECRET": "gw",
            "CORS_ORIGINS": "https://a.example, https://b.example",
            "LOG_FORMAT": "JSON",
            "PORT": "9000",
            "CURRENCY": "XOF",
        })

        assert settings.public_base_url == "https://fourriere.example"
        assert settings.gateway_secret == "gw"
        assert settings.cors_origins == ("https://a.example", "https://b.example")
        assert settings.log_format == "json"
        assert settings.port == 9000
        assert settings.municipality.currency == "XOF"

    def test_bad_port(self):
        with pytest.raises(ValueError):
            load_settings({"PORT": "eighty"})

    def test_tariff_file(self, tmp_path):
        path = tmp_path / "tariffs.json"
        path.write_text(json.dumps({"version": "2025.1", "categories": {}}))

        assert load_settings({"TARIFF_FILE": str(path)}).load_tariffs().version == "2025.1"


class TestCommands:
    """CLI commands that need no database."""

    @pytest.fixture(autouse=True)
    def quiet_logging(self, monkeypatch):
        monkeypatch.setattr("impound_rail.cli.configure_logging", lambda *args, **kwargs: None)

    def test_fee_json(self, capsys):
        code = main(["fee", "SMALL_VEHICLE", "2024-03-01T08:00:00Z", "--at", "2024-03-06T08:00:00Z", "--json"])

        assert code == 0
        data = json.loads(capsys.readouterr().out)
        assert data["days_elapsed"] == 5
        assert data["total_due"] == 55000

    def test_fee_text(self, capsys):
        main(["fee", "MOTORCYCLE", "2024-03-01T08:00:00Z", "--at", "2024-03-01T09:00:00Z"])

        out = capsys.readouterr().out
        assert "Total due:     7 000 FCFA" in out

    def test_fee_bad_timestamp(self, capsys):
        code = main(["fee", "SMALL_VEHICLE", "last week"])

        assert code == 1
        assert "Malformed timestamp" in capsys.readouterr().err

    def test_tariffs(self, capsys):
        assert main(["tariffs"]) == 0
        assert "LARGE_TRUCK" in capsys.readouterr().out

    def test_no_command(self):
        assert main([]) == 1
