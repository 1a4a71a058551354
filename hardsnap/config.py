import re
import logging
import configparser
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union


logger = logging.getLogger('hardsnap')

UNIT_SECONDS = {
    "minutes": 60,
    "hours": 3600,
    "days": 86400,
}

CALENDAR_FIELDS = ("minute", "hour", "weekday", "monthday")

_PLACEHOLDER = re.compile(r"%(0?\d*)([ds])")


@dataclass(frozen=True)
class CycleDefinition:
    """
    One rotation cycle (hour, day, week, month, ...).

    Attributes:
        name: Cycle name, used in logs and reports
        max_generations: Number of generation directories kept
        dir_template: printf-style template taking (index, label)
        preference: Calendar value that triggers a roll, or None
        forced_interval: Age (in interval_unit) that forces a roll
        interval_unit: Human name of the unit the age is measured in
        interval_seconds: Seconds per interval_unit
        calendar_field: Field of the creation instant compared to preference
        gates_lower: Stop evaluating later cycles when this one does not roll
    """

    name: str
    max_generations: int
    dir_template: str
    preference: Optional[int]
    forced_interval: float
    interval_unit: str
    interval_seconds: int
    calendar_field: str
    gates_lower: bool = False
    _pattern: 're.Pattern' = field(init=False, repr=False, compare=False)
    _index_first: bool = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if self.max_generations < 1:
            raise ValueError(f"Cycle '{self.name}': max_generations must be at least 1")
        if self.interval_seconds <= 0:
            raise ValueError(f"Cycle '{self.name}': interval_seconds must be positive")
        if self.forced_interval <= 0:
            raise ValueError(f"Cycle '{self.name}': forced_interval must be positive")
        if self.calendar_field not in CALENDAR_FIELDS:
            raise ValueError(f"Cycle '{self.name}': unknown calendar field '{self.calendar_field}'")
        if "/" in self.dir_template:
            raise ValueError(f"Cycle '{self.name}': template must not contain '/'")

        kinds = [m.group(2) for m in _PLACEHOLDER.finditer(self.dir_template)]
        if sorted(kinds) != ["d", "s"] or "%" in _PLACEHOLDER.sub("", self.dir_template):
            raise ValueError(
                f"Cycle '{self.name}': template '{self.dir_template}' needs exactly one %d and one %s"
            )

        parts = []
        last = 0
        for m in _PLACEHOLDER.finditer(self.dir_template):
            parts.append(re.escape(self.dir_template[last:m.start()]))
            parts.append(r"(\d+)" if m.group(2) == "d" else r"(.+)")
            last = m.end()
        parts.append(re.escape(self.dir_template[last:]))

        # frozen dataclass: bypass __setattr__ for the derived fields
        object.__setattr__(self, "_pattern", re.compile("^" + "".join(parts) + "$"))
        object.__setattr__(self, "_index_first", kinds[0] == "d")

    def dir_name(self, index: int, label: str) -> str:
        """Directory name of generation `index` carrying `label`."""
        if self._index_first:
            return self.dir_template % (index, label)
        return self.dir_template % (label, index)

    def parse_dir_name(self, name: str) -> Optional[Tuple[int, str]]:
        """Return (index, label) when `name` belongs to this cycle, else None."""
        m = self._pattern.match(name)
        if not m:
            return None
        if self._index_first:
            index, label = m.group(1), m.group(2)
        else:
            label, index = m.group(1), m.group(2)
        index = int(index)
        # reject "hour_1_x" for a "%02d" template so names stay lexically sortable
        if self.dir_name(index, label) != name:
            return None
        return index, label

    def time_field(self, moment: datetime) -> int:
        """Calendar value of `moment` selected by this cycle's field."""
        if self.calendar_field == "minute":
            return moment.minute
        if self.calendar_field == "hour":
            return moment.hour
        if self.calendar_field == "weekday":
            return moment.isoweekday()
        return moment.day


DEFAULT_CYCLES: Tuple[CycleDefinition, ...] = (
    CycleDefinition(
        name="hour",
        max_generations=12,
        dir_template="hour_%02d_%s",
        preference=None,
        forced_interval=40,
        interval_unit="minutes",
        interval_seconds=UNIT_SECONDS["minutes"],
        calendar_field="minute",
    ),
    CycleDefinition(
        name="day",
        max_generations=30,
        dir_template="day_%02d_%s",
        preference=6,
        forced_interval=23,
        interval_unit="hours",
        interval_seconds=UNIT_SECONDS["hours"],
        calendar_field="hour",
        gates_lower=True,
    ),
    CycleDefinition(
        name="week",
        max_generations=9,
        dir_template="week_%d_%s",
        preference=1,
        forced_interval=7,
        interval_unit="days",
        interval_seconds=UNIT_SECONDS["days"],
        calendar_field="weekday",
    ),
    CycleDefinition(
        name="month",
        max_generations=9,
        dir_template="mnth_%d_%s",
        preference=1,
        forced_interval=31,
        interval_unit="days",
        interval_seconds=UNIT_SECONDS["days"],
        calendar_field="monthday",
    ),
)


@dataclass
class HardsnapConfig:
    """Settings read from a configuration file."""

    cycles: Tuple[CycleDefinition, ...] = DEFAULT_CYCLES
    backup_root: Optional[str] = None
    source: Optional[str] = None
    ssh: Optional[str] = None
    reconcile: bool = False


def _parse_cycle(name: str, section: configparser.SectionProxy) -> CycleDefinition:
    unit = section.get("unit", "days")
    if unit not in UNIT_SECONDS:
        raise ValueError(f"[cycle:{name}] unknown unit '{unit}', expected one of {', '.join(UNIT_SECONDS)}")

    raw_preference = section.get("preference", "none").strip().lower()
    try:
        preference = None if raw_preference in ("", "none") else int(raw_preference)
        return CycleDefinition(
            name=name,
            max_generations=section.getint("generations"),
            dir_template=section.get("template", f"{name}_%d_%s"),
            preference=preference,
            forced_interval=section.getfloat("force"),
            interval_unit=unit,
            interval_seconds=UNIT_SECONDS[unit],
            calendar_field=section.get("field", "hour"),
            gates_lower=section.getboolean("gates", False),
        )
    except TypeError:
        raise ValueError(f"[cycle:{name}] requires 'generations' and 'force'") from None
    except ValueError as e:
        raise ValueError(f"[cycle:{name}] {e}") from None


def load_config(path: Union[str, Path]) -> HardsnapConfig:
    """
    Load cycle definitions and backup defaults from an INI file.

    Sections named ``[cycle:<name>]`` define cycles in evaluation order. When
    the file defines no cycle the defaults are kept.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If a section holds an invalid value
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Configuration file '{path}' not found")

    # Templates contain '%', so interpolation has to stay off
    parser = configparser.ConfigParser(interpolation=None)
    try:
        parser.read(path, encoding='utf-8')
    except configparser.Error as e:
        raise ValueError(f"Cannot parse configuration file '{path}': {e}") from None

    config = HardsnapConfig()
    cycles: List[CycleDefinition] = []
    seen: Dict[str, bool] = {}
    for section_name in parser.sections():
        if not section_name.startswith("cycle:"):
            continue
        name = section_name.split(":", 1)[1].strip()
        if not name or name in seen:
            raise ValueError(f"Invalid or duplicate cycle section '[{section_name}]'")
        seen[name] = True
        cycles.append(_parse_cycle(name, parser[section_name]))

    if cycles:
        config.cycles = tuple(cycles)

    if parser.has_section("backup"):
        backup = parser["backup"]
        config.backup_root = backup.get("root")
        config.source = backup.get("source")
        config.ssh = backup.get("ssh")
        try:
            config.reconcile = backup.getboolean("reconcile", False)
        except ValueError as e:
            raise ValueError(f"[backup] {e}") from None

    logger.debug(f"Loaded {len(config.cycles)} cycles from '{path}'")
    return config
