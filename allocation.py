"""
Ratio-based section allocation.

Given a student roster, a facilitator pool and the sections that already
exist, recommend how many new sections to create and distribute the
unassigned students across them.

Ratios are students per section: ``target_ratio`` is what we aim for,
``max_ratio`` is the hard ceiling a plan must respect.
"""

import logging
import math
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from canvas_models import Facilitator, Section, Student, members_of

logger = logging.getLogger(__name__)

DEFAULT_TARGET_RATIO = 25
DEFAULT_MAX_RATIO = 50

STRATEGIES = ('balanced', 'alphabetical', 'random')


class AllocationError(ValueError):
    """The allocation request itself is unusable (nothing to allocate, bad config)."""


@dataclass(frozen=True)
class AnalysisWarning:
    type: str
    message: str
    severity: str = 'warning'

    def to_dict(self) -> Dict[str, str]:
        return {'type': self.type, 'message': self.message, 'severity': self.severity}


@dataclass
class Recommendation:
    """Suggested section count and the reasoning behind it."""
    suggested_sections: int
    strategy: str
    reason: str
    total_students: int = 0
    unassigned_students: int = 0
    already_assigned: int = 0
    total_facilitators: int = 0
    available_facilitators: int = 0
    avg_students_per_section: int = 0
    facilitators_used: int = 0
    sections_without_facilitators: int = 0
    can_assign_editing_lecturer: bool = False
    warnings: List[AnalysisWarning] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'suggested_sections': self.suggested_sections,
            'strategy': self.strategy,
            'reason': self.reason,
            'students': {
                'total': self.total_students,
                'unassigned': self.unassigned_students,
                'in_sections': self.already_assigned,
            },
            'facilitators': {
                'total': self.total_facilitators,
                'available': self.available_facilitators,
            },
            'avg_students_per_section': self.avg_students_per_section,
            'facilitators_used': self.facilitators_used,
            'sections_without_facilitators': self.sections_without_facilitators,
            'can_assign_editing_lecturer': self.can_assign_editing_lecturer,
            'warnings': [w.to_dict() for w in self.warnings],
        }


@dataclass(frozen=True)
class NameTemplate:
    internal: str
    external: str

    @classmethod
    def for_base(cls, base_name: str = 'Section') -> 'NameTemplate':
        return cls(internal=f'{base_name} {{number}} (Internal)', external=f'{base_name} {{number}}')

    def render(self, number: int):
        return (self.internal.replace('{number}', str(number)),
                self.external.replace('{number}', str(number)))


@dataclass(frozen=True)
class SectionConfig:
    count: int
    name_template: NameTemplate = field(default_factory=NameTemplate.for_base)


@dataclass
class PlannedSection:
    internal_name: str
    external_name: str
    facilitator: Optional[Facilitator] = None
    students: List[Student] = field(default_factory=list)
    max_students: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'internal_name': self.internal_name,
            'external_name': self.external_name,
            'facilitator': self.facilitator.to_dict() if self.facilitator else None,
            'students': [s.to_dict() for s in self.students],
            'max_students': self.max_students,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PlannedSection':
        facilitator = data.get('facilitator')
        return cls(
            internal_name=data.get('internal_name') or data.get('external_name') or '',
            external_name=data.get('external_name') or data.get('internal_name') or '',
            facilitator=Facilitator.from_canvas(facilitator) if facilitator else None,
            students=[Student.from_canvas(s) for s in data.get('students') or []],
            max_students=int(data.get('max_students') or 0),
        )


@dataclass
class AllocationPlan:
    """Proposed sections, not yet created in Canvas."""
    sections: List[PlannedSection]
    strategy: str
    total_students: int

    @property
    def summary(self) -> Dict[str, Any]:
        count = len(self.sections)
        return {
            'sections_created': count,
            'facilitators_assigned': sum(1 for s in self.sections if s.facilitator),
            'avg_students_per_section': round(self.total_students / count) if count else 0,
            'distribution': [
                {
                    'name': s.external_name,
                    'student_count': len(s.students),
                    'facilitator': s.facilitator.name if s.facilitator else 'Unassigned',
                }
                for s in self.sections
            ],
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sections': [s.to_dict() for s in self.sections],
            'strategy': self.strategy,
            'total_students': self.total_students,
            'summary': self.summary,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AllocationPlan':
        sections = [PlannedSection.from_dict(s) for s in data.get('sections') or []]
        total = data.get('total_students')
        return cls(
            sections=sections,
            strategy=data.get('strategy') or 'balanced',
            total_students=int(total) if total is not None else sum(len(s.students) for s in sections),
        )


@dataclass
class ValidationResult:
    valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {'valid': self.valid, 'errors': list(self.errors), 'warnings': list(self.warnings)}


def unassigned_students(students: Sequence[Student], existing_sections: Sequence[Section] = ()) -> List[Student]:
    """Students not present in any existing section's membership."""
    assigned = set()
    for section in existing_sections:
        assigned.update(s.id for s in members_of(section, list(students)))
    return [s for s in students if s.id not in assigned]


def available_facilitators(facilitators: Sequence[Facilitator],
                           existing_sections: Sequence[Section] = ()) -> List[Facilitator]:
    """Facilitators not already named as the facilitator of an existing section."""
    taken = {s.facilitator_id for s in existing_sections if s.facilitator_id is not None}
    return [f for f in facilitators if f.id not in taken]


class AllocationPlanner:
    """Recommends section counts, builds plans and validates them."""

    def __init__(self, target_ratio: int = DEFAULT_TARGET_RATIO, max_ratio: int = DEFAULT_MAX_RATIO,
                 rng: Optional[random.Random] = None):
        if target_ratio < 1 or max_ratio < 1:
            raise AllocationError("Section ratios must be positive")
        if target_ratio > max_ratio:
            raise AllocationError(f"Target ratio {target_ratio} exceeds maximum ratio {max_ratio}")
        self.target_ratio = target_ratio
        self.max_ratio = max_ratio
        self.rng = rng or random.Random()

    def recommend(self, students: Sequence[Student], facilitators: Sequence[Facilitator],
                  existing_sections: Sequence[Section] = ()) -> Recommendation:
        unassigned = len(unassigned_students(students, existing_sections))
        available = len(available_facilitators(facilitators, existing_sections))

        recommendation = self._choose(unassigned, available)
        recommendation.total_students = len(students)
        recommendation.unassigned_students = unassigned
        recommendation.already_assigned = len(students) - unassigned
        recommendation.total_facilitators = len(facilitators)
        recommendation.available_facilitators = available
        recommendation.warnings = self._warnings(recommendation)

        logger.info(f"Recommendation: {recommendation.suggested_sections} sections "
                    f"({recommendation.strategy}) for {unassigned} unassigned students")
        return recommendation

    def _choose(self, unassigned: int, available: int) -> Recommendation:
        if unassigned == 0:
            return Recommendation(0, 'none', 'All students are already assigned to sections')

        ideal = math.ceil(unassigned / self.target_ratio)
        minimum = math.ceil(unassigned / self.max_ratio)

        if available == 0:
            return Recommendation(
                suggested_sections=minimum,
                strategy='no_facilitators',
                reason='No available facilitators - using maximum ratio',
                avg_students_per_section=math.ceil(unassigned / minimum),
                sections_without_facilitators=minimum,
                can_assign_editing_lecturer=True,
            )

        if ideal <= available:
            return Recommendation(
                suggested_sections=ideal,
                strategy='ideal',
                reason=f'Ideal 1:{self.target_ratio} ratio with available facilitators',
                avg_students_per_section=math.ceil(unassigned / ideal),
                facilitators_used=ideal,
            )

        per_facilitator = math.ceil(unassigned / available)
        if per_facilitator <= self.max_ratio:
            return Recommendation(
                suggested_sections=available,
                strategy='use_all_facilitators',
                reason=f'Using all {available} available facilitators',
                avg_students_per_section=per_facilitator,
                facilitators_used=available,
            )

        return Recommendation(
            suggested_sections=minimum,
            strategy='exceed_capacity',
            reason=f'Need {minimum} sections to stay under 1:{self.max_ratio} ratio',
            avg_students_per_section=math.ceil(unassigned / minimum),
            facilitators_used=available,
            sections_without_facilitators=minimum - available,
            can_assign_editing_lecturer=True,
        )

    def _warnings(self, rec: Recommendation) -> List[AnalysisWarning]:
        warnings = []
        if rec.total_facilitators == 0:
            warnings.append(AnalysisWarning(
                'no_facilitators',
                'No facilitators found in course. Sections will be created without assigned facilitators.',
            ))
        if rec.avg_students_per_section > self.target_ratio:
            warnings.append(AnalysisWarning(
                'high_ratio',
                f'Average students per section ({rec.avg_students_per_section}) exceeds '
                f'ideal ratio of 1:{self.target_ratio}',
                'error' if rec.avg_students_per_section > self.max_ratio else 'warning',
            ))
        if rec.sections_without_facilitators > 0:
            warnings.append(AnalysisWarning(
                'sections_without_facilitators',
                f'{rec.sections_without_facilitators} sections will not have assigned facilitators',
            ))
        if rec.already_assigned > 0:
            warnings.append(AnalysisWarning(
                'existing_assignments',
                f'{rec.already_assigned} students are already assigned to sections and will not be moved',
                'info',
            ))
        return warnings

    def create_plan(self, students: Sequence[Student], facilitators: Sequence[Facilitator],
                    section_config: SectionConfig, strategy: str = 'balanced',
                    existing_sections: Sequence[Section] = ()) -> AllocationPlan:
        """Build ``section_config.count`` sections and fill them round-robin."""
        if strategy not in STRATEGIES:
            raise AllocationError(f"Unknown allocation strategy '{strategy}'. Use one of: {', '.join(STRATEGIES)}")
        if section_config.count < 1:
            raise AllocationError("Section count must be at least 1")

        pending = unassigned_students(students, existing_sections)
        if not pending:
            raise AllocationError("No unassigned students to allocate")

        count = section_config.count
        pool = available_facilitators(facilitators, existing_sections)
        sections = []
        for index in range(count):
            internal, external = section_config.name_template.render(index + 1)
            sections.append(PlannedSection(
                internal_name=internal,
                external_name=external,
                facilitator=pool[index] if index < len(pool) else None,
                max_students=math.ceil(len(pending) / count),
            ))

        for index, student in enumerate(self._order(pending, strategy)):
            sections[index % count].students.append(student)

        return AllocationPlan(sections=sections, strategy=strategy, total_students=len(pending))

    def _order(self, students: List[Student], strategy: str) -> List[Student]:
        ordered = list(students)
        if strategy == 'alphabetical':
            ordered.sort(key=lambda s: (s.sortable_name or '').casefold())
        elif strategy == 'random':
            self.rng.shuffle(ordered)
        return ordered

    def validate(self, plan: AllocationPlan, max_ratio: Optional[int] = None) -> ValidationResult:
        result = ValidationResult()
        max_allowed = max_ratio or self.max_ratio

        for index, section in enumerate(plan.sections, 1):
            size = len(section.students)
            if size > max_allowed:
                result.valid = False
                result.errors.append(
                    f"Section {index} ({section.external_name}) has {size} students, exceeding maximum of {max_allowed}"
                )
            if size == 0:
                result.warnings.append(f"Section {index} ({section.external_name}) has no students assigned")
            if not section.facilitator:
                result.warnings.append(f"Section {index} ({section.external_name}) has no facilitator assigned")

        seen = set()
        for section in plan.sections:
            for student in section.students:
                if student.id in seen:
                    result.valid = False
                    result.errors.append(f"Student {student.name} ({student.id}) is assigned to multiple sections")
                seen.add(student.id)

        return result
