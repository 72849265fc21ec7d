"""
Tests for account upsert, blocking and the admin user list.
"""

import pytest

import accounts


class TestGetOrCreate:
    def test_email_is_normalized_and_reused(self, app):
        first = accounts.get_or_create("  Fan@Example.com ")
        second = accounts.get_or_create("fan@example.com")

        assert first.id == second.id
        assert first.email == "fan@example.com"

    def test_invalid_email(self, app):
        with pytest.raises(ValueError):
            accounts.get_or_create("not-an-email")


class TestListAccounts:
    """Search, status filter and paging for the admin user list."""

    def test_search_matches_anywhere_in_email(self, make_account):
        make_account(email="alice@cards.example")
        make_account(email="bob@other.example")

        found = accounts.list_accounts("CARDS")

        assert [a.email for a in found] == ["alice@cards.example"]

    def test_search_treats_wildcards_literally(self, make_account):
        make_account(email="alice@cards.example")

        assert accounts.list_accounts("%") == []
        assert accounts.list_accounts("_lice") == []

    def test_status_filter(self, make_account):
        make_account(email="ok@example.com")
        make_account(email="bad@example.com", blocked=True)

        assert [a.email for a in accounts.list_accounts(status="active")] == ["ok@example.com"]
        assert [a.email for a in accounts.list_accounts(status="Blocked")] == ["bad@example.com"]
        assert len(accounts.list_accounts(status="")) == 2

    def test_unknown_status(self, app):
        with pytest.raises(ValueError):
            accounts.list_accounts(status="deleted")

    def test_paging(self, make_account):
        for n in range(5):
            make_account(email=f"user{n}@example.com")

        page = accounts.list_accounts(limit=2, offset=1)
        everyone = accounts.list_accounts()

        assert len(page) == 2
        assert [a.id for a in page] == [a.id for a in everyone[1:3]]
