from roster_app.utils.permissions import MANAGE_IMPORTS, VIEW_IMPORTS, can_access_organization, has_permission


class TestImportPermissions:
    def test_operator_can_manage_imports(self, operator_user):
        assert has_permission(operator_user, MANAGE_IMPORTS)
        assert has_permission(operator_user, VIEW_IMPORTS)

    def test_viewer_can_only_view(self, viewer_user):
        assert has_permission(viewer_user, VIEW_IMPORTS)
        assert not has_permission(viewer_user, MANAGE_IMPORTS)

    def test_super_admin_has_every_permission(self, super_admin_user):
        assert has_permission(super_admin_user, MANAGE_IMPORTS)
        assert has_permission(super_admin_user, "anything")

    def test_permission_scoped_to_organization(self, operator_user, test_organization, other_organization):
        assert has_permission(operator_user, MANAGE_IMPORTS, organization=test_organization)
        assert not has_permission(operator_user, MANAGE_IMPORTS, organization=other_organization)

    def test_missing_user_has_no_permission(self):
        assert not has_permission(None, VIEW_IMPORTS)


class TestTenantAccess:
    def test_users_only_reach_their_own_organization(self, operator_user, test_organization, other_organization):
        assert can_access_organization(operator_user, test_organization.id)
        assert not can_access_organization(operator_user, other_organization.id)

    def test_super_admin_reaches_every_organization(self, super_admin_user, other_organization):
        assert can_access_organization(super_admin_user, other_organization.id)

    def test_user_without_organization_reaches_nothing(self, operator_user):
        operator_user.organization_id = None
        assert not can_access_organization(operator_user, 1)
