import pytest
from sqlalchemy import select

from app.features.hierarchy.models import TeamMembership, TeamRole
from app.features.hierarchy.paths import NodeType
from app.features.permissions.models import AuditLog, QuotaScope

from tests.conftest import assign, auth_headers, make_role, make_user, reload


@pytest.fixture
async def admin(db):
    return await make_user(db, "admin@example.org", is_super_admin=True)


@pytest.fixture
async def conference_admin(db, tree):
    user = await make_user(db, "conference@example.org")
    role = await make_role(
        db,
        "conference_admin",
        NodeType.CONFERENCE,
        [
            "conferences.read",
            "churches.*:subordinate",
            "teams.*:subordinate",
            "services.*:subordinate",
            "role_assignments.*:subordinate",
            "roles.read:subordinate",
        ],
    )
    await assign(db, user, role, tree["C1"])
    return user


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


async def test_missing_token_is_unauthenticated(client, tree):
    response = await client.get("/hierarchy/churches/CH2")
    assert response.status_code == 401
    assert response.json()["error"] == "unauthenticated"
    assert response.headers["www-authenticate"] == "Bearer"


async def test_invalid_token_is_unauthenticated(client, tree):
    response = await client.get("/hierarchy/churches/CH2", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


async def test_super_admin_builds_the_tree(client, admin):
    headers = auth_headers(admin)
    response = await client.post("/hierarchy/unions", json={"id": "U7", "name": "East", "region": "east"}, headers=headers)
    assert response.status_code == 201, response.text
    assert response.json()["path"] == "U7"

    response = await client.post(
        "/hierarchy/conferences", json={"id": "C7", "name": "Delta", "parent_id": "U7"}, headers=headers
    )
    assert response.status_code == 201, response.text
    body = response.json()
    assert body["path"] == "U7/C7"
    assert body["depth"] == 1
    assert body["region"] == "east"
    assert body["node_type"] == "conference"


async def test_unknown_level_is_not_found(client, admin):
    response = await client.post("/hierarchy/planets", json={"name": "Mars"}, headers=auth_headers(admin))
    assert response.status_code == 404


async def test_wrong_parent_type_is_invalid_hierarchy(client, admin, tree):
    response = await client.post(
        "/hierarchy/churches", json={"name": "Misplaced", "parent_id": "U1"}, headers=auth_headers(admin)
    )
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_hierarchy"


async def test_user_without_roles_is_denied(client, db, tree):
    user = await make_user(db, "nobody@example.org")
    response = await client.get("/hierarchy/churches/CH2", headers=auth_headers(user))
    assert response.status_code == 403
    body = response.json()
    assert body["error"] == "unauthorized"
    assert "no role assigned" in body["detail"]


async def test_subordinate_grant_over_http(client, conference_admin, tree):
    headers = auth_headers(conference_admin)

    response = await client.patch("/hierarchy/churches/CH2", json={"name": "Central Church"}, headers=headers)
    assert response.status_code == 200, response.text
    assert response.json()["name"] == "Central Church"

    # Subordinate scope does not include the conference itself
    response = await client.patch("/hierarchy/conferences/C1", json={"name": "Renamed"}, headers=headers)
    assert response.status_code == 403
    assert "insufficient permissions" in response.json()["detail"]

    # Nor a sibling conference's churches
    response = await client.get("/hierarchy/conferences/C9/descendants", headers=headers)
    assert response.status_code == 403


async def test_create_child_under_own_conference(client, conference_admin, tree):
    headers = auth_headers(conference_admin)
    response = await client.post(
        "/hierarchy/churches", json={"id": "CH8", "name": "Hilltop", "parent_id": "C1"}, headers=headers
    )
    assert response.status_code == 201, response.text
    assert response.json()["path"] == "U1/C1/CH8"

    response = await client.post(
        "/hierarchy/churches", json={"name": "Elsewhere", "parent_id": "C9"}, headers=headers
    )
    assert response.status_code == 403


async def test_list_descendants(client, conference_admin, tree):
    response = await client.get(
        "/hierarchy/conferences/C1/descendants", params={"level": "teams"}, headers=auth_headers(conference_admin)
    )
    assert response.status_code == 200
    assert [node["path"] for node in response.json()] == ["U1/C1/CH2/T5", "U1/C1/CH2/T6"]


async def test_move_over_http(client, db, admin, tree):
    headers = auth_headers(admin)
    response = await client.post("/hierarchy/churches/CH2/move", json={"new_parent_id": "C9"}, headers=headers)
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["new_path"] == "U1/C9/CH2"
    assert body["rewritten"] == 5
    assert body["status"] == "completed"
    assert (await reload(db, tree["S1"])).path == "U1/C9/CH2/T5/S1"

    job = await client.get(f"/hierarchy/cascades/{body['job_id']}", headers=headers)
    assert job.status_code == 200
    assert job.json()["status"] == "completed"


async def test_move_needs_create_where_the_node_lands(client, conference_admin, tree):
    # Allowed to update CH2 under C1, but C9 is outside the grant
    response = await client.post(
        "/hierarchy/churches/CH2/move", json={"new_parent_id": "C9"}, headers=auth_headers(conference_admin)
    )
    assert response.status_code == 403


async def test_invalid_move_reports_nothing_applied(client, admin, tree):
    response = await client.post(
        "/hierarchy/conferences/C1/move", json={"new_parent_id": "CH2"}, headers=auth_headers(admin)
    )
    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "invalid_hierarchy"
    assert body["applied"] is False


async def test_deactivate_and_delete(client, db, admin, tree):
    headers = auth_headers(admin)

    response = await client.delete("/hierarchy/churches/CH2", headers=headers)
    assert response.status_code == 400
    assert "2 teams still exist" in response.json()["detail"]

    response = await client.post(
        "/hierarchy/teams/T5/deactivate", json={"reason": "Merged into Youth"}, headers=headers
    )
    assert response.status_code == 200, response.text
    assert response.json()["rewritten"] == 3
    service = await reload(db, tree["S2"])
    assert service.status.value == "archived"

    response = await client.patch("/hierarchy/teams/T5", json={"name": "Too late"}, headers=headers)
    assert response.status_code == 400

    response = await client.delete("/hierarchy/services/S3", headers=headers)
    assert response.status_code == 204


async def test_team_members(client, db, conference_admin, tree):
    member = await make_user(db, "singer@example.org")
    headers = auth_headers(conference_admin)

    response = await client.post(
        "/hierarchy/teams/T5/members", json={"user_id": member.id, "role": "leader"}, headers=headers
    )
    assert response.status_code == 201, response.text

    response = await client.post(
        "/hierarchy/teams/T5/members", json={"user_id": member.id, "role": "member"}, headers=headers
    )
    assert response.status_code == 409

    response = await client.get("/hierarchy/teams/T5/members", headers=headers)
    assert [m["user_id"] for m in response.json()] == [member.id]

    response = await client.delete(f"/hierarchy/teams/T5/members/{member.id}", headers=headers)
    assert response.status_code == 204
    result = await db.execute(select(TeamMembership).where(TeamMembership.team_id == "T5"))
    assert result.scalars().all() == []


async def test_team_subordinate_grant_follows_leadership(client, db, tree):
    user = await make_user(db, "lead@example.org")
    role = await make_role(db, "team_leader", NodeType.TEAM, ["services.update:team_subordinate"])
    await assign(db, user, role, tree["T5"])
    db.add(TeamMembership(user_id=user.id, team_id="T6", role=TeamRole.LEADER))
    await db.commit()
    service = await client.post(
        "/hierarchy/services", json={"id": "S9", "name": "Rehearsal", "parent_id": "T6"},
        headers=auth_headers(await make_user(db, "root@example.org", is_super_admin=True)),
    )
    assert service.status_code == 201, service.text

    headers = auth_headers(user)
    response = await client.patch("/hierarchy/services/S9", json={"name": "Dress rehearsal"}, headers=headers)
    assert response.status_code == 200, response.text
    # Not a leader of T5, so its own team's services are out of reach
    response = await client.patch("/hierarchy/services/S1", json={"name": "Nope"}, headers=headers)
    assert response.status_code == 403


# Roles and assignments

async def test_role_management_requires_super_admin(client, conference_admin):
    response = await client.post(
        "/permissions/roles",
        json={"name": "helper", "display_name": "Helper", "level": "church", "permissions": ["churches.read"]},
        headers=auth_headers(conference_admin),
    )
    assert response.status_code == 403


async def test_role_with_invalid_permission_is_rejected(client, admin):
    response = await client.post(
        "/permissions/roles",
        json={"name": "broken", "display_name": "Broken", "level": "church", "permissions": ["churches.read:galaxy"]},
        headers=auth_headers(admin),
    )
    assert response.status_code == 400


async def test_assignment_quota_over_http(client, db, admin, conference_admin, tree):
    pastor = await make_role(db, "church_pastor", NodeType.CHURCH, ["churches.*"], quota_max_users=1)
    first, second = await make_user(db, "p1@example.org"), await make_user(db, "p2@example.org")
    headers = auth_headers(conference_admin)

    response = await client.post(
        "/permissions/assignments",
        json={"user_id": first.id, "role_id": pastor.id, "node_type": "church", "node_id": "CH2"},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    assignment_id = response.json()["id"]
    assert response.json()["scope_path"] == "U1/C1/CH2"

    response = await client.post(
        "/permissions/assignments",
        json={"user_id": second.id, "role_id": pastor.id, "node_type": "church", "node_id": "CH2"},
        headers=headers,
    )
    assert response.status_code == 409
    body = response.json()
    assert body["error"] == "quota_exceeded"
    assert body["max"] == 1

    # Another church has its own quota
    response = await client.post(
        "/permissions/assignments",
        json={"user_id": second.id, "role_id": pastor.id, "node_type": "church", "node_id": "CH3"},
        headers=headers,
    )
    assert response.status_code == 201

    response = await client.get(
        f"/permissions/quota/{pastor.id}", params={"node_type": "church", "node_id": "CH2"}, headers=headers
    )
    assert response.json()["current"] == 1
    assert response.json()["allowed"] is False

    response = await client.delete(f"/permissions/assignments/{assignment_id}", headers=headers)
    assert response.status_code == 204

    response = await client.post(
        "/permissions/assignments",
        json={"user_id": second.id, "role_id": pastor.id, "node_type": "church", "node_id": "CH2"},
        headers=headers,
    )
    assert response.status_code == 201


async def test_assignment_at_the_wrong_level_is_rejected(client, db, admin, tree):
    pastor = await make_role(db, "church_pastor", NodeType.CHURCH, ["churches.*"])
    user = await make_user(db, "p@example.org")
    response = await client.post(
        "/permissions/assignments",
        json={"user_id": user.id, "role_id": pastor.id, "node_type": "team", "node_id": "T5"},
        headers=auth_headers(admin),
    )
    assert response.status_code == 400


async def test_bulk_assignment_reports_violations(client, db, admin, tree):
    elder = await make_role(db, "elder", NodeType.CHURCH, ["churches.read"], quota_max_users=2)
    users = [await make_user(db, f"e{i}@example.org") for i in range(3)]
    response = await client.post(
        "/permissions/assignments/bulk",
        json={
            "node_type": "church",
            "node_id": "CH2",
            "assignments": [{"user_id": user.id, "role_id": elder.id} for user in users],
        },
        headers=auth_headers(admin),
    )
    assert response.status_code == 409
    [violation] = response.json()["violations"]
    assert violation["role_name"] == "elder"
    assert violation["requested"] == 3

    response = await client.post(
        "/permissions/assignments/bulk",
        json={
            "node_type": "church",
            "node_id": "CH2",
            "assignments": [{"user_id": user.id, "role_id": elder.id} for user in users[:2]],
        },
        headers=auth_headers(admin),
    )
    assert response.status_code == 201, response.text
    assert len(response.json()) == 2


async def test_quota_overview(client, db, admin, tree):
    role = await make_role(db, "team_leader", NodeType.TEAM, [], quota_max_users=1, quota_scope=QuotaScope.TEAM)
    await assign(db, await make_user(db, "l@example.org"), role, tree["T5"])
    response = await client.get(
        "/permissions/quota", params={"node_type": "team", "node_id": "T5"}, headers=auth_headers(admin)
    )
    assert response.status_code == 200
    body = response.json()
    assert body["health"]["status"] == "critical"
    assert body["roles"][0]["scope_key"] == "U1/C1/CH2/T5"


# Decisions

async def test_permission_check_never_raises(client, conference_admin, tree):
    headers = auth_headers(conference_admin)
    response = await client.post(
        "/permissions/check",
        json={"resource": "teams", "action": "update", "node_type": "team", "node_id": "T5"},
        headers=headers,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["allowed"] is True
    assert body["matched_permission"] == "teams.*:subordinate"
    assert body["target_path"] == "U1/C1/CH2/T5"

    response = await client.post(
        "/permissions/check",
        json={"resource": "conferences", "action": "delete", "node_type": "conference", "node_id": "C9"},
        headers=headers,
    )
    assert response.status_code == 200
    assert response.json()["allowed"] is False
    assert response.json()["kind"] == "insufficient_permissions"


async def test_permission_check_without_target_uses_active_grant(client, conference_admin, tree):
    response = await client.post(
        "/permissions/check", json={"resource": "conferences", "action": "read"}, headers=auth_headers(conference_admin)
    )
    assert response.json()["allowed"] is True
    assert response.json()["target_path"] == "U1/C1"


async def test_my_permissions(client, conference_admin, tree):
    response = await client.get("/permissions/me", headers=auth_headers(conference_admin))
    assert response.status_code == 200
    body = response.json()
    assert body["is_super_admin"] is False
    assert body["active_path"] == "U1/C1"
    [grant] = body["grants"]
    assert grant["role_name"] == "conference_admin"
    assert "churches.*:subordinate" in grant["permissions"]


async def test_decisions_are_audited(client, db, admin, conference_admin, tree):
    await client.patch("/hierarchy/conferences/C1", json={"name": "Renamed"}, headers=auth_headers(conference_admin))

    result = await db.execute(select(AuditLog).where(AuditLog.user_id == conference_admin.id))
    [entry] = result.scalars().all()
    assert entry.action == "conferences.update"
    assert entry.outcome == "insufficient_permissions"
    assert entry.resource_id == "C1"

    response = await client.get(
        "/permissions/audit-logs", params={"outcome": "insufficient_permissions"}, headers=auth_headers(admin)
    )
    assert response.status_code == 200
    assert response.json()["total"] == 1


async def test_primary_organization(client, db, tree):
    user = await make_user(db, "member@example.org")
    response = await client.put(
        "/users/me/primary-organization", json={"node_type": "church", "node_id": "CH2"}, headers=auth_headers(user)
    )
    assert response.status_code == 200, response.text
    assert response.json()["primary_organization_id"] == "CH2"

    response = await client.put(
        "/users/me/primary-organization", json={"node_type": "team", "node_id": "T5"}, headers=auth_headers(user)
    )
    assert response.status_code == 400


async def test_deactivating_a_user_revokes_their_roles(client, db, admin, tree):
    role = await make_role(db, "church_pastor", NodeType.CHURCH, ["churches.read"], quota_max_users=1)
    holder = await make_user(db, "holder@example.org")
    newcomer = await make_user(db, "newcomer@example.org")
    headers = auth_headers(admin)

    response = await client.post(
        "/permissions/assignments",
        json={"user_id": holder.id, "role_id": role.id, "node_type": "church", "node_id": "CH2"},
        headers=headers,
    )
    assert response.status_code == 201

    response = await client.delete(f"/users/{holder.id}", headers=headers)
    assert response.status_code == 200
    assert response.json()["revoked_assignments"] == 1

    response = await client.get("/hierarchy/churches/CH2", headers=auth_headers(holder))
    assert response.status_code == 401

    response = await client.post(
        "/permissions/assignments",
        json={"user_id": newcomer.id, "role_id": role.id, "node_type": "church", "node_id": "CH2"},
        headers=headers,
    )
    assert response.status_code == 201, response.text


async def test_changing_a_quota_recounts_from_live_assignments(client, db, admin, tree):
    deacon = await make_role(db, "deacon", NodeType.CHURCH, ["churches.read"], quota_max_users=2)
    members = [await make_user(db, f"deacon{i}@example.org") for i in range(6)]
    headers = auth_headers(admin)

    async def appoint(user):
        return await client.post(
            "/permissions/assignments",
            json={"user_id": user.id, "role_id": deacon.id, "node_type": "church", "node_id": "CH2"},
            headers=headers,
        )

    first = await appoint(members[0])
    assert first.status_code == 201
    assert (await appoint(members[1])).status_code == 201

    response = await client.put(f"/permissions/roles/{deacon.id}", json={"quota_max_users": None}, headers=headers)
    assert response.status_code == 200
    for member in members[2:5]:
        assert (await appoint(member)).status_code == 201

    response = await client.put(f"/permissions/roles/{deacon.id}", json={"quota_max_users": 2}, headers=headers)
    assert response.status_code == 200

    # Four deacons remain after one leaves, still above the ceiling of two
    response = await client.delete(f"/permissions/assignments/{first.json()['id']}", headers=headers)
    assert response.status_code == 204
    response = await appoint(members[5])
    assert response.status_code == 409
    assert response.json()["error"] == "quota_exceeded"
