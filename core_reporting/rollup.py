"""
Hierarchical Rollup Engine

Sums flat collections of categorized entries (one per region, branch, ...)
into declared intermediate groups and a grand total. Intermediate totals are
computed from base entries; composite totals are computed from their declared
children's totals, never by re-scanning the entries.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence
import logging

from .currency import to_decimal

logger = logging.getLogger("ripoti.rollup")

ZERO = Decimal('0')


@dataclass
class RollupEntry:
    """A leaf record: group key plus named numeric fields"""
    group: str
    values: Dict[str, Decimal] = field(default_factory=dict)
    label: str = ""

    def __post_init__(self):
        self.values = {name: to_decimal(value) for name, value in self.values.items()}

    def get(self, field_name: str) -> Decimal:
        """Missing fields read as zero"""
        return self.values.get(field_name, ZERO)


def compute_group_totals(
    entries: Iterable[RollupEntry],
    fields: Sequence[str],
    predicate: Optional[Callable[[RollupEntry], bool]] = None
) -> Dict[str, Decimal]:
    """
    Sum each field across the entries selected by predicate.
    An empty selection totals zero for every field.
    """
    totals = {name: ZERO for name in fields}
    for entry in entries:
        if predicate is not None and not predicate(entry):
            continue
        for name in fields:
            totals[name] += entry.get(name)
    return totals


@dataclass
class RollupGroup:
    """
    Either a partition of base group keys (members) or a composite
    defined as the sum of other groups (children).
    """
    name: str
    members: List[str] = field(default_factory=list)
    children: List[str] = field(default_factory=list)

    @property
    def is_composite(self) -> bool:
        return bool(self.children)


class RollupHierarchy:
    """
    Declared region -> zone -> grand total structure.

    Example:
        hierarchy = RollupHierarchy(["D", "M"])
        hierarchy.define_partition("Mainland", ["Arusha", "Dodoma"])
        hierarchy.define_partition("Zanzibar", ["Pemba North"])
        hierarchy.define_composite("Total", ["Mainland", "Zanzibar"])
        totals = hierarchy.compute(entries)
    """

    def __init__(self, fields: Sequence[str]):
        if not fields:
            raise ValueError("Rollup hierarchy needs at least one field")
        self.fields = list(fields)
        self._groups: Dict[str, RollupGroup] = {}

    def define_partition(self, name: str, members: Iterable[str]) -> RollupGroup:
        """Intermediate group summing the base entries whose group key is in members"""
        self._check_new(name)
        group = RollupGroup(name=name, members=list(members))
        self._groups[name] = group
        return group

    def define_composite(self, name: str, children: Iterable[str]) -> RollupGroup:
        """Group defined as the sum of already-declared groups"""
        self._check_new(name)
        children = list(children)
        if not children:
            raise ValueError(f"Composite group {name} needs at least one child")
        for child in children:
            if child not in self._groups:
                raise ValueError(f"Composite group {name} references undefined group {child}")
        group = RollupGroup(name=name, children=children)
        self._groups[name] = group
        return group

    def _check_new(self, name: str) -> None:
        if not name:
            raise ValueError("Group name is required")
        if name in self._groups:
            raise ValueError(f"Group {name} is already defined")

    def groups(self) -> List[str]:
        return list(self._groups)

    def get_group(self, name: str) -> RollupGroup:
        group = self._groups.get(name)
        if group is None:
            raise ValueError(f"Group {name} is not defined")
        return group

    def leaf_members(self, name: str) -> List[str]:
        """All base group keys that roll up into a group"""
        group = self.get_group(name)
        if not group.is_composite:
            return list(group.members)
        members = []
        for child in group.children:
            members.extend(self.leaf_members(child))
        return members

    def compute(self, entries: Iterable[RollupEntry]) -> Dict[str, Dict[str, Decimal]]:
        """
        Totals for every base group key seen in entries, every partition and
        every composite. Partition members with no entries contribute zero.
        """
        entries = list(entries)
        totals: Dict[str, Dict[str, Decimal]] = {}

        for entry in entries:
            bucket = totals.setdefault(entry.group, {name: ZERO for name in self.fields})
            for name in self.fields:
                bucket[name] += entry.get(name)

        # Groups are stored in declaration order and children precede parents
        for group in self._groups.values():
            if group.is_composite:
                sources = [totals[child] for child in group.children]
            else:
                sources = [totals[member] for member in group.members if member in totals]
            totals[group.name] = {
                name: sum((source[name] for source in sources), ZERO) for name in self.fields
            }

        declared = set()
        for group in self._groups.values():
            declared.update(group.members)
        stray = sorted({entry.group for entry in entries} - declared)
        if stray:
            logger.debug(f"Entries outside every partition: {', '.join(stray)}")

        return totals

    def verify(self, entries: Iterable[RollupEntry], root: str) -> bool:
        """
        Check that the bottom-up total of root equals the direct sum of all
        base entries under it, for every field.
        """
        entries = list(entries)
        totals = self.compute(entries)
        members = set(self.leaf_members(root))
        direct = compute_group_totals(entries, self.fields, lambda e: e.group in members)

        mismatched = [name for name in self.fields if totals[root][name] != direct[name]]
        if mismatched:
            logger.warning(
                f"Rollup {root} does not match direct sum for fields {', '.join(mismatched)}"
            )
            return False
        return True


def entries_from_rows(rows: Iterable[Mapping[str, Any]], group_key: str, fields: Sequence[str]) -> List[RollupEntry]:
    """Build entries from dict rows such as {"region": "Arusha", "D": "1500000", ...}"""
    entries = []
    for row in rows:
        entries.append(RollupEntry(
            group=str(row[group_key]),
            values={name: row.get(name, ZERO) for name in fields},
            label=str(row.get('label', row[group_key]))
        ))
    return entries
