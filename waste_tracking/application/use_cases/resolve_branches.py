from __future__ import annotations

import logging

from waste_tracking.application.ports import BranchRepoPort, OrgUnitRepoPort
from waste_tracking.domain.errors import NotFoundError, ValidationError
from waste_tracking.domain.models.org import Branch, OrgUnit, OrgUnitType, Scope

log = logging.getLogger(__name__)


class OrgHierarchyResolver:
    """
    Turns a requested scope into the concrete set of branch ids to aggregate over.

    City, Country and Region/State units own no explicit member list: branches belong to
    them when the denormalized branch attribute equals the unit name exactly.
    """

    def __init__(self, branches: BranchRepoPort, org_units: OrgUnitRepoPort) -> None:
        self._branches = branches
        self._org_units = org_units

    async def resolve(self, scope: Scope) -> frozenset[str]:
        if scope.branch_id:
            return frozenset({scope.branch_id})
        if scope.org_unit_id:
            resolved = await self._resolve_org_unit(scope.org_unit_id)
        elif scope.company_id:
            resolved = _ids(await self._branches.list_active(company_id=scope.company_id))
        else:
            resolved = _ids(await self._branches.list_active())
        log.debug(
            "Resolved scope branch_id=%s company_id=%s org_unit_id=%s branches=%s",
            scope.branch_id,
            scope.company_id,
            scope.org_unit_id,
            len(resolved),
        )
        return resolved

    async def load_org_unit(self, org_unit_id: str) -> OrgUnit:
        org_unit = await self._org_units.get(org_unit_id)
        if org_unit is not None:
            return org_unit
        # Older clients send a branch id where an org unit id is expected.
        branch = await self._branches.get(org_unit_id)
        if branch is None:
            raise NotFoundError(f"OrgUnit or Branch {org_unit_id} not found")
        log.debug("OrgUnit fallback to branch id=%s", org_unit_id)
        return OrgUnit(
            org_unit_id=branch.branch_id,
            name=branch.name,
            unit_type=OrgUnitType.BRANCH.value,
            company_id=branch.company_id,
            branch_id=branch.branch_id,
        )

    async def _resolve_org_unit(self, org_unit_id: str) -> frozenset[str]:
        org_unit = await self.load_org_unit(org_unit_id)
        unit_type = org_unit.unit_type
        if unit_type == OrgUnitType.BRANCH:
            if not org_unit.branch_id:
                raise ValidationError(f"Branch OrgUnit {org_unit.org_unit_id} is missing its branch reference")
            return frozenset({org_unit.branch_id})
        if unit_type == OrgUnitType.CITY:
            branches = await self._branches.list_active(company_id=org_unit.company_id, city=org_unit.name)
        elif unit_type == OrgUnitType.COUNTRY:
            branches = await self._branches.list_active(company_id=org_unit.company_id, country=org_unit.name)
        elif unit_type in (OrgUnitType.REGION, OrgUnitType.STATE):
            branches = await self._branches.list_active(company_id=org_unit.company_id, subdivision=org_unit.name)
        else:
            branches = await self._branches.list_active(company_id=org_unit.company_id)
        return _ids(branches)


def _ids(branches: list[Branch]) -> frozenset[str]:
    return frozenset(branch.branch_id for branch in branches)
