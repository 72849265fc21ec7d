"""
Tests for the append-only activity log and its derived owner view.
"""

from datetime import datetime

import pytest

import activity_log
import claim_engine
from extensions import db
from models_activity import ACTION_CLAIMED, ACTION_RELEASED


class TestRecord:
    def test_unknown_action_is_rejected(self, make_card, make_account):
        with pytest.raises(ValueError):
            activity_log.record(make_card().id, make_account().id, "teleported")

    def test_metadata_round_trips_as_json(self, make_card, make_account):
        card, account = make_card(), make_account()

        entry = activity_log.record(card.id, account.id, ACTION_CLAIMED, metadata={"claim_source": "scan"})
        db.session.commit()

        assert entry.to_dict()["metadata"] == {"claim_source": "scan"}


class TestHistory:
    """Newest first; insertion order breaks timestamp ties."""

    def test_newest_first(self, make_card, make_account):
        card, account = make_card(), make_account()
        claim_engine.claim_by_token(card.claim_token, account)
        claim_engine.release(card.id, account)

        actions = [e.action for e in activity_log.history(card.id)]

        assert actions == [ACTION_RELEASED, ACTION_CLAIMED]

    def test_identical_timestamps_keep_insertion_order(self, make_card, make_account, mocker):
        card, account = make_card(), make_account()
        frozen = mocker.patch("activity_log.datetime")
        frozen.utcnow.return_value = datetime(2024, 1, 1, 12, 0, 0)

        for action in (ACTION_CLAIMED, ACTION_RELEASED, ACTION_CLAIMED):
            activity_log.record(card.id, account.id, action)
        db.session.commit()

        entries = activity_log.history(card.id)
        assert [e.action for e in entries] == [ACTION_CLAIMED, ACTION_RELEASED, ACTION_CLAIMED]
        assert entries[0].id > entries[1].id > entries[2].id

    def test_limit(self, make_card, make_account):
        card, account = make_card(), make_account()
        for _ in range(5):
            activity_log.record(card.id, account.id, ACTION_CLAIMED)
        db.session.commit()

        assert len(activity_log.history(card.id, limit=3)) == 3


class TestCurrentOwnerEmail:
    def test_follows_claims_and_releases(self, make_card, make_account):
        card = make_card()
        first = make_account(email="first@example.com")
        second = make_account(email="second@example.com")

        assert activity_log.current_owner_email(card.id) is None

        claim_engine.claim_by_token(card.claim_token, first)
        assert activity_log.current_owner_email(card.id) == "first@example.com"

        claim_engine.release(card.id, first)
        assert activity_log.current_owner_email(card.id) is None

        claim_engine.claim_by_token(card.claim_token, second)
        assert activity_log.current_owner_email(card.id) == "second@example.com"

    def test_history_with_emails(self, make_card, make_account):
        card = make_card()
        owner = make_account(email="owner@example.com")
        claim_engine.claim_by_token(card.claim_token, owner)
        claim_engine.release(card.id, owner)

        timeline = activity_log.history_with_emails(card.id)

        assert timeline[0]["action"] == ACTION_RELEASED
        assert timeline[0]["user_email"] == "owner@example.com"
        assert timeline[0]["previous_owner_email"] == "owner@example.com"
        assert timeline[1]["previous_owner_email"] is None
