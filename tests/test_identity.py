"""Tests for the workbook-backed user directory."""

from __future__ import annotations

import pytest

from sales_portal import data_manager
from sales_portal.constants import Role


def test_seeded_admin_is_resolved(run, users):
    profile = run(users.get_profile(1))

    assert profile.role is Role.ADMIN
    assert profile.salesperson_code == "SP-DEFAULT"


def test_add_user_assigns_next_id_and_role(run, users):
    user = run(users.add_user(" sam ", Role.SALES_PERSON, "SP01", ["L1", " ", "L2 "]))

    assert user.user_id == 2
    assert user.user_name == "sam"
    assert user.location_codes == ("L1", "L2")
    assert run(users.get_user_role_name(user.role_id)) == "SalesPerson"
    assert run(users.get_user_location_codes(2)) == ["L1", "L2"]


def test_add_user_persists_to_disk(run, users, store_workbook_path):
    run(users.add_user("sam", Role.SALES_PERSON, "SP01", ["L1"]))

    reloaded = data_manager.open_workbook(store_workbook_path)
    assert [user.user_name for user in data_manager.iter_users(reloaded)] == ["admin", "sam"]


@pytest.mark.parametrize("name", ["", "   ", "ADMIN"])
def test_add_user_rejects_blank_or_duplicate_names(run, users, name):
    with pytest.raises(ValueError):
        run(users.add_user(name, Role.SALES_PERSON, "SP01"))


def test_add_user_requires_configured_role(run, users, session):
    sheet = session.workbook[data_manager.USER_ROLES_SHEET]
    sheet.delete_rows(2, sheet.max_row)

    with pytest.raises(KeyError):
        run(users.add_user("sam", Role.SALES_PERSON, "SP01"))


def test_inactive_users_are_hidden(run, users, session):
    data_manager.append_user(
        session.workbook,
        data_manager.UserRow(
            user_id=9,
            user_name="gone",
            role_id=3,
            salesperson_code="SP09",
            location_codes=("L1",),
            is_active=False,
        ),
    )

    assert run(users.get_user_by_id(9)) is None
    assert run(users.get_profile(9)) is None
    assert run(users.get_user_location_codes(9)) == []


def test_unknown_role_name_resolves_to_no_role(run, users, session):
    data_manager.append_role(session.workbook, data_manager.RoleRow(role_id=7, role_name="Auditor"))
    data_manager.append_user(
        session.workbook,
        data_manager.UserRow(
            user_id=4,
            user_name="audrey",
            role_id=7,
            salesperson_code="SP04",
            location_codes=(),
            is_active=True,
        ),
    )

    profile = run(users.get_profile(4))
    assert profile is not None
    assert profile.role is None


def test_unknown_user_has_no_profile(run, users):
    assert run(users.get_profile(404)) is None
