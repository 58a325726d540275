from __future__ import annotations

import pytest

from waste_tracking.domain.errors import NotFoundError, ValidationError
from waste_tracking.domain.models.org import OrgUnit, Scope


@pytest.mark.asyncio
async def test_branch_takes_precedence(resolver):
    scope = Scope(branch_id="BR3", company_id="CO1", org_unit_id="OU-AU")
    assert await resolver.resolve(scope) == {"BR3"}


@pytest.mark.asyncio
async def test_org_unit_takes_precedence_over_company(resolver):
    assert await resolver.resolve(Scope(company_id="CO2", org_unit_id="OU-VIC")) == {"BR2"}


@pytest.mark.asyncio
async def test_company_scope_lists_active_branches(resolver):
    assert await resolver.resolve(Scope(company_id="CO1")) == {"BR1", "BR2"}
    assert await resolver.resolve(Scope(company_id="CO2")) == {"BR3"}


@pytest.mark.asyncio
async def test_empty_scope_lists_all_active_branches(resolver):
    assert await resolver.resolve(Scope()) == {"BR1", "BR2", "BR3"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("org_unit_id", "expected"),
    [
        ("OU-SYD", {"BR1"}),
        ("OU-AU", {"BR1", "BR2"}),
        ("OU-VIC", {"BR2"}),
        ("OU-ACME", {"BR1", "BR2"}),
        ("OU-MEL", {"BR2"}),
    ],
)
async def test_org_unit_membership(resolver, org_unit_id, expected):
    assert await resolver.resolve(Scope(org_unit_id=org_unit_id)) == expected


@pytest.mark.asyncio
async def test_city_match_is_exact(resolver, db):
    db.add_org_unit(OrgUnit("OU-syd-lower", "sydney", "City", "CO1"))
    assert await resolver.resolve(Scope(org_unit_id="OU-syd-lower")) == frozenset()


@pytest.mark.asyncio
async def test_branch_id_is_accepted_as_org_unit(resolver):
    assert await resolver.resolve(Scope(org_unit_id="BR3")) == {"BR3"}


@pytest.mark.asyncio
async def test_unknown_org_unit_is_not_found(resolver):
    with pytest.raises(NotFoundError):
        await resolver.resolve(Scope(org_unit_id="OU-NOWHERE"))


@pytest.mark.asyncio
async def test_branch_unit_without_reference_is_invalid(resolver):
    with pytest.raises(ValidationError):
        await resolver.resolve(Scope(org_unit_id="OU-BROKEN"))
