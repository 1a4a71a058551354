import pytest
from datetime import datetime

from hardsnap.config import CycleDefinition, DEFAULT_CYCLES, HardsnapConfig, load_config


def _cycle(**overrides):
    fields = dict(
        name="test", max_generations=3, dir_template="test_%02d_%s", preference=None,
        forced_interval=1, interval_unit="hours", interval_seconds=3600, calendar_field="hour",
    )
    fields.update(overrides)
    return CycleDefinition(**fields)


def test_default_cycles():
    """The default table matches the reference schedule."""
    by_name = {c.name: c for c in DEFAULT_CYCLES}
    assert [c.name for c in DEFAULT_CYCLES] == ["hour", "day", "week", "month"]

    assert by_name["hour"].max_generations == 12
    assert by_name["hour"].forced_interval == 40
    assert by_name["hour"].interval_seconds == 60
    assert by_name["hour"].preference is None

    assert by_name["day"].max_generations == 30
    assert by_name["day"].forced_interval == 23
    assert by_name["day"].preference == 6
    assert by_name["day"].gates_lower

    assert by_name["week"].preference == 1
    assert by_name["week"].calendar_field == "weekday"
    assert by_name["month"].forced_interval == 31
    assert by_name["month"].calendar_field == "monthday"


def test_dir_names_keep_index_width():
    """Two-digit cycles pad their index, week and month do not."""
    by_name = {c.name: c for c in DEFAULT_CYCLES}
    assert by_name["hour"].dir_name(3, "2024-01-03_1000") == "hour_03_2024-01-03_1000"
    assert by_name["day"].dir_name(12, "x") == "day_12_x"
    assert by_name["week"].dir_name(3, "x") == "week_3_x"
    assert by_name["month"].dir_name(10, "x") == "mnth_10_x"


def test_parse_dir_name():
    cycle = _cycle()
    assert cycle.parse_dir_name("test_07_2024-01-03_1000") == (7, "2024-01-03_1000")
    assert cycle.parse_dir_name("test_7_2024-01-03_1000") is None
    assert cycle.parse_dir_name("other_07_x") is None
    assert cycle.parse_dir_name("test_07_") is None


def test_parse_variable_width():
    week = _cycle(name="week", dir_template="week_%d_%s")
    assert week.parse_dir_name("week_10_label") == (10, "label")
    assert week.parse_dir_name("week_1_label") == (1, "label")


def test_time_fields():
    """Each calendar field selects the expected component."""
    moment = datetime(2024, 1, 1, 6, 30)  # a Monday
    assert _cycle(calendar_field="minute").time_field(moment) == 30
    assert _cycle(calendar_field="hour").time_field(moment) == 6
    assert _cycle(calendar_field="weekday").time_field(moment) == 1
    assert _cycle(calendar_field="monthday").time_field(moment) == 1


@pytest.mark.parametrize("overrides", [
    {"max_generations": 0},
    {"interval_seconds": 0},
    {"forced_interval": 0},
    {"calendar_field": "second"},
    {"dir_template": "test_%s"},
    {"dir_template": "test_%d_%d"},
    {"dir_template": "a/%d_%s"},
])
def test_invalid_cycle(overrides):
    with pytest.raises(ValueError):
        _cycle(**overrides)


def test_load_config(temp_dir):
    """Cycles are read in section order and templates keep their '%'."""
    path = temp_dir / "hardsnap.ini"
    path.write_text(
        "[backup]\n"
        "root = /srv/backups\n"
        "source = host:/data\n"
        "reconcile = yes\n"
        "\n"
        "[cycle:quarter]\n"
        "generations = 4\n"
        "template = q_%02d_%s\n"
        "preference = none\n"
        "force = 15\n"
        "unit = minutes\n"
        "field = minute\n"
        "\n"
        "[cycle:day]\n"
        "generations = 7\n"
        "template = d_%d_%s\n"
        "preference = 3\n"
        "force = 20\n"
        "unit = hours\n"
        "field = hour\n"
        "gates = true\n"
    )

    config = load_config(path)

    assert [c.name for c in config.cycles] == ["quarter", "day"]
    quarter, day = config.cycles
    assert quarter.dir_name(1, "x") == "q_01_x"
    assert quarter.preference is None
    assert quarter.interval_seconds == 60
    assert day.preference == 3
    assert day.gates_lower
    assert day.interval_seconds == 3600
    assert config.backup_root == "/srv/backups"
    assert config.source == "host:/data"
    assert config.reconcile is True


def test_load_config_without_cycles_keeps_defaults(temp_dir):
    path = temp_dir / "hardsnap.ini"
    path.write_text("[backup]\nroot = /srv\n")
    config = load_config(path)
    assert config.cycles == DEFAULT_CYCLES
    assert config.reconcile is False


@pytest.mark.parametrize("section", [
    "[cycle:bad]\ngenerations = 3\n",
    "[cycle:bad]\ngenerations = three\nforce = 1\n",
    "[cycle:bad]\ngenerations = 3\nforce = 1\nunit = fortnights\n",
    "[cycle:bad]\ngenerations = 3\nforce = 1\npreference = soon\n",
])
def test_load_config_rejects_bad_values(temp_dir, section):
    path = temp_dir / "hardsnap.ini"
    path.write_text(section)
    with pytest.raises(ValueError):
        load_config(path)


def test_load_missing_config(temp_dir):
    with pytest.raises(FileNotFoundError):
        load_config(temp_dir / "absent.ini")


def test_empty_config_object():
    assert HardsnapConfig().cycles == DEFAULT_CYCLES
