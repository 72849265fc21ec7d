"""
Tests for card lookups, admin bulk tools and batch import.
"""

from decimal import Decimal

import pytest

import card_registry
from card_registry import STATE_ACTIVE, STATE_INACTIVE, STATE_RESTORED, STATE_SOFT_DELETED


class TestLookups:
    """Code, token and prefix search lookups."""

    def test_find_by_code_ignores_case_and_whitespace(self, make_card):
        card = make_card(code="QS-00AA11")

        assert card_registry.find_by_code("  qs-00aa11 ").id == card.id
        assert card_registry.find_by_code("QS-00AA1") is None
        assert card_registry.find_by_code("") is None

    def test_find_by_claim_token_is_exact(self, make_card):
        card = make_card()

        assert card_registry.find_by_claim_token(card.claim_token).id == card.id
        assert card_registry.find_by_claim_token(card.claim_token.upper() + "x") is None
        assert card_registry.find_by_claim_token(None) is None

    def test_search_is_prefix_and_case_insensitive(self, make_card):
        make_card(code="HA-1")
        make_card(code="HA-2")
        make_card(code="SK-1")

        codes = sorted(c.code for c in card_registry.search("ha-"))

        assert codes == ["HA-1", "HA-2"]

    def test_search_treats_wildcards_literally(self, make_card):
        make_card(code="HA-1")

        assert card_registry.search("%") == []
        assert card_registry.search("_A") == []

    def test_search_hides_soft_deleted_by_default(self, make_card):
        card = make_card(code="HA-1")
        card_registry.set_state([card.id], STATE_SOFT_DELETED, actor_id="admin-1")

        assert card_registry.search("HA") == []
        assert [c.id for c in card_registry.search("HA", include_deleted=True)] == [card.id]

    def test_get_many_skips_missing(self, make_card):
        card = make_card()

        found = card_registry.get_many([card.id, "missing", None])

        assert list(found) == [card.id]

    def test_claim_url_embeds_token(self, make_card):
        card = make_card()

        assert card_registry.claim_url(card).endswith(card.claim_token)
        assert card_registry.code_url(card).endswith("/r/" + card.code)


class TestBulkState:
    """Admin bulk tools: rows are independent, partial success allowed."""

    def test_partial_success_reports_per_row(self, make_card):
        cards = [make_card(), make_card()]

        affected, results = card_registry.set_state([cards[0].id, "missing", cards[1].id], STATE_INACTIVE)

        assert affected == 2
        assert [r.ok for r in results] == [True, False, True]
        assert results[1].error == "not_found"
        assert all(card_registry.get(c.id, fresh=True).is_active is False for c in cards)

    def test_soft_delete_and_restore(self, make_card):
        card = make_card()

        card_registry.set_state([card.id], STATE_SOFT_DELETED, actor_id="admin-1")
        deleted = card_registry.get(card.id, fresh=True)
        assert deleted.deleted_at is not None
        assert deleted.deleted_by == "admin-1"

        card_registry.set_state([card.id], STATE_RESTORED)
        restored = card_registry.get(card.id, fresh=True)
        assert restored.deleted_at is None
        assert restored.is_claimable

    def test_reactivate(self, make_card):
        card = make_card(is_active=False)

        affected, _ = card_registry.set_state([card.id], STATE_ACTIVE)

        assert affected == 1
        assert card_registry.get(card.id, fresh=True).is_active is True

    def test_duplicate_ids_are_applied_once(self, make_card):
        card = make_card()

        affected, results = card_registry.set_state([card.id, card.id], STATE_INACTIVE)

        assert affected == 1
        assert len(results) == 1

    def test_unknown_state(self, make_card):
        with pytest.raises(ValueError):
            card_registry.set_state([make_card().id], "archived")

    def test_bulk_patch_cannot_touch_ownership(self, make_card):
        card = make_card()

        with pytest.raises(ValueError):
            card_registry.update_many([card.id], {"owner_id": "someone"})
        with pytest.raises(ValueError):
            card_registry.update_many([card.id], {"redemption_status": "credited"})

    def test_bulk_patch_display_fields(self, make_card):
        cards = [make_card(), make_card()]

        results = card_registry.update_many([c.id for c in cards], {"rarity": "legendary"})

        assert all(r.ok for r in results)
        assert {card_registry.get(c.id, fresh=True).rarity for c in cards} == {"legendary"}


class TestUpdateCard:
    """Single card edits, including code and TIME value."""

    def test_edit_code_and_value(self, make_card):
        card = make_card()

        updated = card_registry.update_card(card.id, {"code": "NEW-1", "time_value": "3.5", "name": "Renamed"})

        assert updated.code == "NEW-1"
        assert updated.time_value == Decimal("3.50")
        assert updated.name == "Renamed"

    def test_code_must_be_unique(self, make_card):
        make_card(code="TAKEN-1")
        card = make_card()

        with pytest.raises(ValueError, match="already in use"):
            card_registry.update_card(card.id, {"code": "taken-1"})

    def test_negative_value_rejected(self, make_card):
        with pytest.raises(ValueError):
            card_registry.update_card(make_card().id, {"time_value": "-2"})

    def test_non_finite_value_rejected(self, make_card):
        card = make_card()

        for raw in ("NaN", "Infinity", "-inf"):
            with pytest.raises(ValueError, match="must be a number"):
                card_registry.update_card(card.id, {"time_value": raw})
        assert card_registry.get(card.id, fresh=True).time_value == Decimal("10.00")

    def test_missing_card(self, app):
        assert card_registry.update_card("missing", {"name": "x"}) is None


class TestCreateCards:
    """Admin batch import."""

    def test_import_generates_codes_and_tokens(self, app):
        results = card_registry.create_cards([
            {"name": "Ace of Hearts", "suit": "Hearts", "rank": "A", "time_value": "5"},
            {"name": "King of Spades", "code": "KS-CUSTOM", "suit": "Spades", "rank": "K"},
        ])

        assert [r["ok"] for r in results] == [True, True]
        first, second = results[0]["card"], results[1]["card"]
        assert first.code.startswith("HA-")
        assert second.code == "KS-CUSTOM"
        assert first.claim_token and first.claim_token != second.claim_token
        assert first.owner_id is None
        assert first.redemption_status == "none"
        assert first.time_value == Decimal("5.00")

    def test_invalid_rows_are_reported_and_skipped(self, make_card):
        make_card(code="DUP-1")

        results = card_registry.create_cards([
            {"code": "X-1"},
            {"name": "Dup", "code": "dup-1"},
            {"name": "Neg", "time_value": "-1"},
            {"name": "Twice", "code": "T-1"},
            {"name": "Twice again", "code": "T-1"},
            {"name": "Hidden", "is_active": "false"},
        ])

        assert [r["ok"] for r in results] == [False, False, False, True, False, True]
        assert results[0]["error"] == "name is required"
        assert results[5]["card"].is_active is False

    def test_generated_codes_are_unique(self, app):
        codes = {card_registry.generate_card_code("Q", "Clubs") for _ in range(20)}

        assert all(c.startswith("CQ-") for c in codes)
        assert len(codes) == 20

    def test_non_finite_values_are_row_errors(self, app):
        results = card_registry.create_cards([
            {"name": "Not a number", "time_value": "NaN"},
            {"name": "Endless", "time_value": "Infinity"},
            {"name": "Fine", "time_value": "1"},
        ])

        assert [r["ok"] for r in results] == [False, False, True]
        assert results[0]["error"] == "time_value must be a number"
