from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class OrgUnitType(StrEnum):
    COMPANY = "Company"
    COUNTRY = "Country"
    REGION = "Region"
    STATE = "State"
    CITY = "City"
    BRANCH = "Branch"


@dataclass(slots=True, frozen=True)
class Company:
    company_id: str
    name: str
    is_deleted: bool = False


@dataclass(slots=True, frozen=True)
class Branch:
    branch_id: str
    company_id: str
    name: str
    city: str
    country: str
    subdivision: str = ""
    is_deleted: bool = False


@dataclass(slots=True, frozen=True)
class OrgUnit:
    org_unit_id: str
    name: str
    unit_type: str
    company_id: str
    parent_id: str | None = None
    branch_id: str | None = None


@dataclass(slots=True, frozen=True)
class Cleaner:
    cleaner_id: str
    name: str
    code: str | None = None


@dataclass(slots=True, frozen=True)
class Scope:
    branch_id: str | None = None
    company_id: str | None = None
    org_unit_id: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.branch_id or self.company_id or self.org_unit_id)
