"""Tests for the dbmigrate command line."""

import pytest

from test_orchestrator import FakeAdapterFactory

from dbmigrate import cli
from dbmigrate.services.migration import orchestrator as orchestrator_module

CONFIG = """
migration:
  source:
    type: vertica
    host: vertica.internal
    database: analytics
  target:
    type: postgresql
    host: pg.internal
    database: warehouse
  settings:
    batch_size: 10
  tables:
    - source_table: ITEMS
    - source_table: CATEGORY
      target_table: category
    - source_table: ORDERS
      enabled: false
"""


@pytest.fixture
def factory(monkeypatch):
    factory = FakeAdapterFactory()
    monkeypatch.setattr(orchestrator_module, "default_adapter_factory", factory)
    monkeypatch.setattr(cli, "configure_logging", lambda level: None)
    return factory


@pytest.fixture
def config_path(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "migration.yaml"
    path.write_text(CONFIG)
    return str(path)


class TestListTables:
    def test_configured_tables(self, factory, config_path, capsys):
        assert cli.main(["list-tables", "-c", config_path]) == 0

        output = capsys.readouterr().out
        assert "ITEMS" in output
        assert "ORDERS" in output
        assert "(disabled)" in output

    def test_discover(self, factory, config_path, capsys):
        assert cli.main(["list-tables", "-c", config_path, "--discover"]) == 0

        output = capsys.readouterr().out
        assert "1. category" in output
        assert "2. items" in output


class TestMigrate:
    def test_migrate_table(self, factory, config_path, capsys):
        assert cli.main(["migrate-table", "-c", config_path, "-t", "ITEMS", "-b", "5"]) == 0

        output = capsys.readouterr().out
        assert "Migrated rows: 25" in output
        assert len(factory.target_data["items"]) == 25

    def test_dry_run(self, factory, config_path, capsys):
        assert cli.main(["migrate-table", "-c", config_path, "-t", "ITEMS", "--dry-run"]) == 0

        assert "DRY RUN MODE" in capsys.readouterr().out
        assert factory.target_data == {}

    def test_invalid_batch_size(self, factory, config_path, capsys):
        assert cli.main(["migrate-table", "-c", config_path, "-t", "ITEMS", "-b", "0"]) == 1

        assert "--batch-size must be greater than 0" in capsys.readouterr().out

    def test_misaligned_start_offset(self, factory, config_path, capsys):
        code = cli.main(["migrate-table", "-c", config_path, "-t", "ITEMS", "-b", "10", "--start-offset", "15"])

        assert code == 1
        assert capsys.readouterr().out.splitlines()[-1].startswith("Error:")

    def test_failed_rows_are_sampled(self, factory, config_path, capsys):
        for index in range(5):
            factory.source_data["items"][index]["ID"] = f"bad-{index}"

        assert cli.main(["migrate-table", "-c", config_path, "-t", "ITEMS"]) == 0

        output = capsys.readouterr().out
        errors = [line for line in output.splitlines() if line.startswith("    - ")]
        assert "Failed rows:   5" in output
        assert "Errors:        5" in output
        assert len(errors) == 4
        assert errors[0].startswith("    - Row 0:")
        assert errors[-1] == "    - ... and 2 more"

    def test_verbose_prints_every_failed_row(self, factory, config_path, capsys):
        for index in range(5):
            factory.source_data["items"][index]["ID"] = f"bad-{index}"

        assert cli.main(["migrate-table", "-c", config_path, "-t", "ITEMS", "--verbose"]) == 0

        errors = [line for line in capsys.readouterr().out.splitlines() if line.startswith("    - ")]
        assert [line.split(":")[0] for line in errors] == [f"    - Row {index}" for index in range(5)]

    def test_migrate_all(self, factory, config_path, capsys):
        assert cli.main(["migrate-all", "-c", config_path]) == 0

        output = capsys.readouterr().out
        assert "Successful: 2 tables" in output
        assert "Rows:       28/28 migrated, 0 failed" in output

    def test_migrate_all_with_failed_table(self, factory, config_path, capsys):
        factory.unreachable.add("postgresql")

        assert cli.main(["migrate-all", "-c", config_path]) == 1

        output = capsys.readouterr().out
        assert "Failed:     2 tables" in output


class TestValidate:
    def test_valid_configuration(self, factory, config_path, capsys):
        assert cli.main(["validate", "-c", config_path]) == 0

        output = capsys.readouterr().out
        assert "vertica (source): OK" in output
        assert "All validations passed!" in output

    def test_unreachable_source(self, factory, config_path, capsys):
        factory.unreachable.add("vertica")

        assert cli.main(["validate", "-c", config_path]) == 1

        assert "vertica (source): FAILED" in capsys.readouterr().out

    def test_incomplete_configuration(self, factory, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        path = tmp_path / "migration.yaml"
        path.write_text(CONFIG.replace("host: pg.internal", "host: ''"))

        assert cli.main(["validate", "-c", str(path)]) == 1

        assert "Target database connection information is incomplete" in capsys.readouterr().out


def test_missing_config_file(factory, tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)

    assert cli.main(["list-tables", "-c", str(tmp_path / "absent.yaml")]) == 1

    assert capsys.readouterr().out.startswith("Error:")
