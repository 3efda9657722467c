from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from domain import Occurrence, Placement, SessionRequirement, TimeSlot


class Assignment:
    """
    Occurrence -> Placement map with the indexes the solver needs.

    Lookups by (teacher, slot), (room, slot) and (division, slot) are O(1).
    Teacher minutes count session durations, not slot lengths.
    """

    def __init__(self, requirements: Mapping[str, SessionRequirement]):
        self.requirements = requirements
        self._placements: Dict[Occurrence, Placement] = {}
        self._teacher_slots: Dict[Tuple[str, TimeSlot], Occurrence] = {}
        self._room_slots: Dict[Tuple[str, TimeSlot], Occurrence] = {}
        self._division_slots: Dict[Tuple[str, TimeSlot], List[Occurrence]] = defaultdict(list)
        self._teacher_minutes: Dict[str, int] = defaultdict(int)
        self._slot_usage: Dict[TimeSlot, int] = defaultdict(int)
        self._by_teacher: Dict[str, Set[Occurrence]] = defaultdict(set)

    @classmethod
    def from_placements(cls, requirements: Mapping[str, SessionRequirement],
                        placements: Mapping[Occurrence, Placement]) -> 'Assignment':
        """Rebuild the indexes from raw placements. No feasibility check."""
        assignment = cls(requirements)
        for occ in sorted(placements):
            assignment.place(occ, placements[occ])
        return assignment

    def requirement(self, occ: Occurrence) -> SessionRequirement:
        return self.requirements[occ.requirement_id]

    # ----- mutation ----- #
    def place(self, occ: Occurrence, placement: Placement) -> None:
        if occ in self._placements:
            raise ValueError(f"{occ} is already placed")
        req = self.requirement(occ)
        self._placements[occ] = placement
        for slot in placement.slots:
            self._teacher_slots[(placement.teacher_id, slot)] = occ
            self._room_slots[(placement.room_id, slot)] = occ
            self._division_slots[(req.group.division_id, slot)].append(occ)
            self._slot_usage[slot] += 1
        self._teacher_minutes[placement.teacher_id] += req.duration
        self._by_teacher[placement.teacher_id].add(occ)

    def remove(self, occ: Occurrence) -> Placement:
        placement = self._placements.pop(occ)
        req = self.requirement(occ)
        for slot in placement.slots:
            if self._teacher_slots.get((placement.teacher_id, slot)) == occ:
                del self._teacher_slots[(placement.teacher_id, slot)]
            if self._room_slots.get((placement.room_id, slot)) == occ:
                del self._room_slots[(placement.room_id, slot)]
            key = (req.group.division_id, slot)
            self._division_slots[key].remove(occ)
            if not self._division_slots[key]:
                del self._division_slots[key]
            self._slot_usage[slot] -= 1
        self._teacher_minutes[placement.teacher_id] -= req.duration
        self._by_teacher[placement.teacher_id].discard(occ)
        return placement

    # ----- lookups ----- #
    def get(self, occ: Occurrence) -> Optional[Placement]:
        return self._placements.get(occ)

    def __contains__(self, occ) -> bool:
        return occ in self._placements

    def __len__(self):
        return len(self._placements)

    def __iter__(self):
        return iter(sorted(self._placements))

    def items(self) -> List[Tuple[Occurrence, Placement]]:
        return [(occ, self._placements[occ]) for occ in sorted(self._placements)]

    def teacher_at(self, teacher_id: str, slot: TimeSlot) -> Optional[Occurrence]:
        return self._teacher_slots.get((teacher_id, slot))

    def room_at(self, room_id: str, slot: TimeSlot) -> Optional[Occurrence]:
        return self._room_slots.get((room_id, slot))

    def division_at(self, division_id: str, slot: TimeSlot) -> List[Occurrence]:
        return self._division_slots.get((division_id, slot), [])

    def teacher_minutes(self, teacher_id: str) -> int:
        return self._teacher_minutes.get(teacher_id, 0)

    def teacher_occurrences(self, teacher_id: str) -> Set[Occurrence]:
        return set(self._by_teacher.get(teacher_id, ()))

    def slot_usage(self, slot: TimeSlot) -> int:
        return self._slot_usage.get(slot, 0)

    # ----- copies ----- #
    def snapshot(self) -> Dict[Occurrence, Placement]:
        """Plain copy of the placements; safe to hand out while search goes on."""
        return dict(self._placements)

    def copy(self) -> 'Assignment':
        return Assignment.from_placements(self.requirements, self._placements)

    def placed(self) -> Iterable[Occurrence]:
        return list(self._placements.keys())
