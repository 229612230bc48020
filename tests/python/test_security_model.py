import pytest

from expense_portal import (
    AuthenticationRequired,
    PermissionDenied,
    SecurityModel,
    TokenDirectory,
    User,
    UserDirectory,
    UserRole,
)
from expense_portal.models import ExpenseStatus
from expense_portal.security import (
    API_ENDPOINT_PERMISSIONS,
    AuditEventType,
    approval_level_for,
    pending_statuses_for,
)


def _user(role: UserRole, site_id: str | None = "site-a", **overrides: object) -> User:
    return User(id=f"{role.value}-user", name=role.value, role=role, site_id=site_id, **overrides)


def test_approval_capability_table() -> None:
    assert approval_level_for(UserRole.L1_APPROVER) == 1
    assert approval_level_for(UserRole.L2_APPROVER) == 2
    assert approval_level_for(UserRole.L3_APPROVER) == 3
    assert approval_level_for(UserRole.FINANCE) == 4
    assert approval_level_for(UserRole.DIRECTOR) == 5
    assert approval_level_for(UserRole.SUBMITTER) is None
    assert approval_level_for(UserRole.ADMIN) is None


def test_pending_statuses_for_roles() -> None:
    assert pending_statuses_for(UserRole.L1_APPROVER) == {
        ExpenseStatus.SUBMITTED,
        ExpenseStatus.UNDER_REVIEW,
    }
    assert pending_statuses_for(UserRole.FINANCE) == {ExpenseStatus.APPROVED_L3}
    assert pending_statuses_for(UserRole.DIRECTOR) == {ExpenseStatus.APPROVED_FINANCE}
    assert pending_statuses_for(UserRole.SUBMITTER) == frozenset()


def test_authorize_is_audited() -> None:
    model = SecurityModel()
    submitter = _user(UserRole.SUBMITTER)

    assert model.authorize(submitter, "POST /expenses/create")
    assert not model.authorize(submitter, "POST /expenses/:id/approve")

    events = model.audit_log.filter_by_type(AuditEventType.AUTHORIZATION)
    assert [event.outcome for event in events] == ["allowed", "denied"]
    assert events[1].metadata["required_permission"] == "approve"


def test_require_raises_permission_denied() -> None:
    model = SecurityModel()

    with pytest.raises(PermissionDenied):
        model.require(_user(UserRole.L3_APPROVER), "PUT /sites/:id/policy")
    model.require(_user(UserRole.FINANCE), "PUT /sites/:id/policy")


def test_inactive_users_are_denied() -> None:
    model = SecurityModel()

    assert not model.authorize(_user(UserRole.ADMIN, is_active=False), "GET /expenses/:id")


def test_unknown_endpoint_raises_key_error() -> None:
    with pytest.raises(KeyError):
        SecurityModel().required_permission("DELETE /everything")


def test_every_endpoint_is_mapped() -> None:
    assert {endpoint.split(" ")[0] for endpoint in API_ENDPOINT_PERMISSIONS} == {
        "GET",
        "POST",
        "PUT",
    }
    assert len(API_ENDPOINT_PERMISSIONS) == 11


def test_site_scoping() -> None:
    model = SecurityModel()

    assert model.can_access_site(_user(UserRole.L1_APPROVER), "site-a")
    assert not model.can_access_site(_user(UserRole.L1_APPROVER), "site-b")
    assert model.can_access_site(_user(UserRole.L2_APPROVER), "site-b")
    assert model.can_access_site(_user(UserRole.FINANCE, site_id=None), "site-b")

    with pytest.raises(PermissionDenied, match="No site assigned"):
        model.require_site(_user(UserRole.SUBMITTER, site_id=None), "site-a")
    with pytest.raises(PermissionDenied, match="assigned site"):
        model.require_site(_user(UserRole.L1_APPROVER), "site-b")


def test_token_directory_resolves_active_users() -> None:
    users = UserDirectory()
    active = users.add(_user(UserRole.SUBMITTER))
    inactive = users.add(
        User(id="gone", name="Gone", role=UserRole.SUBMITTER, site_id="site-a", is_active=False)
    )
    tokens = TokenDirectory(users)

    token = tokens.issue(active.id)
    assert tokens.resolve(token) == active

    with pytest.raises(AuthenticationRequired):
        tokens.resolve(None)
    with pytest.raises(AuthenticationRequired):
        tokens.resolve("bogus")
    with pytest.raises(AuthenticationRequired, match="inactive"):
        tokens.resolve(tokens.issue(inactive.id))

    tokens.revoke(token)
    with pytest.raises(AuthenticationRequired):
        tokens.resolve(token)
    outcomes = [event.outcome for event in tokens.audit_log.events]
    assert outcomes == ["denied", "denied", "inactive", "denied"]
