"""
Tests for exact-name user role lookup
"""
from conftest import make_response
from profile_manager_core import USER_ROLES, find_role_by_name


class FakeRolesAPI:
    """Returns the same fuzzy search result for any query"""

    def __init__(self, roles):
        self.roles = roles
        self.calls = []

    def list_all(self, endpoint, profile_id=None, params=None, max_pages=10):
        self.calls.append((endpoint, profile_id, dict(params or {})))
        return list(self.roles)


ROLES = [{'id': 10, 'name': 'Admin'}, {'id': 11, 'name': 'Viewer'}]


def test_returns_exact_match():
    api = FakeRolesAPI(ROLES)

    assert find_role_by_name(api, 'Admin', '555') == {'id': 10, 'name': 'Admin'}


def test_fuzzy_results_without_exact_match_give_none():
    api = FakeRolesAPI([{'id': 12, 'name': 'Admin (read only)'}, {'id': 10, 'name': 'Admin'}])

    assert find_role_by_name(api, 'NoSuchRole', '555') is None
    assert find_role_by_name(api, 'admin', '555') is None


def test_first_exact_match_wins():
    api = FakeRolesAPI([{'id': 1, 'name': 'Admin'}, {'id': 2, 'name': 'Admin'}])

    assert find_role_by_name(api, 'Admin', '555')['id'] == 1


def test_account_scope_params():
    api = FakeRolesAPI(ROLES)

    find_role_by_name(api, 'Viewer', '555')

    endpoint, profile_id, params = api.calls[0]
    assert endpoint is USER_ROLES
    assert profile_id == '555'
    assert params == {'searchString': 'Viewer', 'accountUserRoleOnly': 'true'}


def test_subaccount_scope_params():
    api = FakeRolesAPI(ROLES)

    find_role_by_name(api, 'Viewer', '555', subaccount_id='77')

    assert api.calls[0][2] == {
        'searchString': 'Viewer',
        'accountUserRoleOnly': 'false',
        'subaccountId': '77',
    }


def test_lookup_over_http(make_api):
    api, session = make_api(responses=[
        make_response(payload={'userRoles': [
            {'id': '10', 'name': 'Admin', 'accountId': '1', 'defaultUserRole': False},
            {'id': '11', 'name': 'Admin Lite', 'accountId': '1'},
        ]}),
    ])

    role = find_role_by_name(api, 'Admin', '555')

    assert role['id'] == '10'
    assert session.calls[0]['url'].endswith('/userprofiles/555/userRoles')
    assert session.calls[0]['params']['searchString'] == 'Admin'
