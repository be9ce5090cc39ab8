"""
Module: statement_kernel.selectors.facility_selector
Responsibility: Facility and project lookups used for statement metadata
    and multi-facility scoping.
Architecture position: Kernel > Selectors.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from sqlalchemy import select

from statement_kernel.models.form_data import FormDataEntry
from statement_kernel.models.project import Facility, Project
from statement_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class FacilityDTO:
    id: int
    name: str
    facility_type: str
    district: str | None


@dataclass(frozen=True)
class ProjectDTO:
    id: int
    name: str
    code: str
    project_type: str


class FacilitySelector(BaseSelector):
    """Read-only access to ``facilities`` and ``projects``."""

    def get_facilities(self, facility_ids: Sequence[int]) -> list[FacilityDTO]:
        if not facility_ids:
            return []
        rows = self.session.execute(
            select(Facility).where(Facility.id.in_(list(facility_ids))).order_by(Facility.id)
        ).scalars()
        return [
            FacilityDTO(
                id=row.id,
                name=row.name,
                facility_type=row.facility_type,
                district=row.district,
            )
            for row in rows
        ]

    def existing_ids(self, facility_ids: Sequence[int]) -> set[int]:
        if not facility_ids:
            return set()
        return set(
            self.session.execute(
                select(Facility.id).where(Facility.id.in_(list(facility_ids)))
            ).scalars()
        )

    def facilities_with_data(self, facility_ids: Sequence[int]) -> set[int]:
        """Facilities having at least one submitted form, any period."""
        if not facility_ids:
            return set()
        return set(
            self.session.execute(
                select(FormDataEntry.facility_id)
                .where(FormDataEntry.facility_id.in_(list(facility_ids)))
                .group_by(FormDataEntry.facility_id)
            ).scalars()
        )

    def get_project(self, project_id: int) -> ProjectDTO | None:
        project = self.session.get(Project, project_id)
        if project is None:
            return None
        return ProjectDTO(
            id=project.id,
            name=project.name,
            code=project.code,
            project_type=project.project_type,
        )
