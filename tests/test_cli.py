import asyncio
import csv
import json

import pytest

from api.rest import DispatchServiceAPI
from config import Config
from main import SEED_FILE, DispatchCLI, create_arg_parser, main


@pytest.fixture
def cli(registry, gateway, composer, tmp_path):
    settings = Config(data_dir=str(tmp_path / "cli"))
    return DispatchCLI(DispatchServiceAPI(registry=registry, gateway=gateway, composer=composer, settings=settings))


def run(cli, *argv):
    return asyncio.run(main(create_arg_parser().parse_args(list(argv)), cli))


def test_seed_loads_sample_fleet(cli, registry, capsys):
    with open(SEED_FILE, "r", encoding="utf-8") as f:
        expected = len(json.load(f))

    assert run(cli, "seed", "--clear") == 0

    assert len(registry.list_all()) == expected
    assert f"Seeded {expected} ambulance(s)" in capsys.readouterr().out


def test_seed_twice_does_not_duplicate(cli, registry):
    first = cli.seed()
    cli.seed()

    assert len(registry.list_all()) == first


def test_register_command(cli, registry, capsys):
    code = run(cli, "register", "City Emergency", "DL01AB1234", "9876543210", "28.62", "77.21",
               "--driver-name", "Rajesh Kumar", "--vehicle-type", "neonatal")

    assert code == 0
    record = registry.list_all()[0]
    assert record.driver_name == "Rajesh Kumar"
    assert record.vehicle_type.value == "neonatal"
    assert "Registered amb_000001" in capsys.readouterr().out


def test_register_command_rejects_bad_latitude(cli, registry, capsys):
    code = run(cli, "register", "City Emergency", "DL01AB1234", "9876543210", "95", "77.21")

    assert code == 1
    assert registry.list_all() == []
    assert "latitude" in capsys.readouterr().out


def test_locate_command(cli, capsys):
    cli.seed()
    capsys.readouterr()

    assert run(cli, "locate", "28.6139", "77.2090", "--radius", "5") == 0

    out = capsys.readouterr().out
    assert "Found" in out
    assert "City Emergency Services" in out


def test_dispatch_command_dry_run(cli, gateway, capsys):
    cli.seed()

    assert run(cli, "dispatch", "28.6139", "77.2090") == 0

    assert gateway.calls == []
    assert gateway.closed is True
    assert "skipped (dry run)" in capsys.readouterr().out


def test_dispatch_command_live(cli, gateway):
    cli.seed()

    assert run(cli, "dispatch", "28.6139", "77.2090", "--callback-phone", "+919812345678") == 0
    assert len(gateway.calls) > 0


def test_dispatch_command_invalid_radius(cli):
    assert run(cli, "dispatch", "28.6139", "77.2090", "--radius", "-1") == 1


def test_stats_and_rebuild_commands(cli, capsys):
    cli.seed()
    capsys.readouterr()

    assert run(cli, "stats") == 0
    assert "Total ambulances: 6" in capsys.readouterr().out
    assert run(cli, "rebuild-index") == 0
    assert "Index rebuilt" in capsys.readouterr().out


def test_export_command(cli, tmp_path):
    cli.seed()
    output = tmp_path / "export"

    assert run(cli, "export", "--output", str(output)) == 0

    with open(output / "ambulances.csv", newline="", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assert len(rows) == 6
    assert rows[0]["vehicle_number"] == "DL01AB1234"
    summary = json.loads((output / "summary.json").read_text(encoding="utf-8"))
    assert summary["total_ambulances"] == 6
    grid = json.loads((output / "grid_index.json").read_text(encoding="utf-8"))
    assert sum(len(ids) for ids in grid["cells"].values()) == 6
