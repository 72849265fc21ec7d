"""
Unit tests for scanned payload parsing and claim response shaping.
"""

from types import SimpleNamespace

import pytest

from claim_engine import ClaimOutcome, ClaimResult
from scan_utils import STATUS_MESSAGES, claim_response, error_response, extract_code_or_token


class TestExtractCodeOrToken:
    """QR payloads and typed codes map to (kind, value)."""

    def test_claim_url_yields_token(self):
        assert extract_code_or_token("https://tot.cards/claim?token=abc_DEF-123") == ("token", "abc_DEF-123")

    def test_claim_url_with_extra_params(self):
        assert extract_code_or_token("https://tot.cards/claim?utm=qr&token=xyz") == ("token", "xyz")

    def test_claim_url_without_token_is_unusable(self):
        assert extract_code_or_token("https://tot.cards/claim") is None
        assert extract_code_or_token("https://tot.cards/claim?token=") is None
        assert extract_code_or_token("https://tot.cards/claim?token=%20") is None

    def test_claim_path_must_match_exactly(self):
        assert extract_code_or_token("https://tot.cards/foo/claim?token=abc") == ("code", "claim")
        assert extract_code_or_token("https://tot.cards/Claim?token=abc") == ("code", "Claim")

    def test_short_code_url(self):
        assert extract_code_or_token("https://tot.cards/r/HA-1F2E3D") == ("code", "HA-1F2E3D")

    def test_short_code_url_is_unquoted_and_ignores_query(self):
        assert extract_code_or_token("https://tot.cards/R/HA%2D1?src=qr") == ("code", "HA-1")

    def test_other_url_uses_last_path_segment(self):
        assert extract_code_or_token("http://example.com/cards/view/KS-000001/") == ("code", "KS-000001")

    def test_url_without_path_is_unusable(self):
        assert extract_code_or_token("https://tot.cards/") is None

    def test_plain_code(self):
        assert extract_code_or_token("  HA-1F2E3D  ") == ("code", "HA-1F2E3D")

    def test_plain_text_takes_first_code_run(self):
        assert extract_code_or_token("code: QS_77 (gold)") == ("code", "code")

    @pytest.mark.parametrize("payload", [None, "", "   ", "!!!"])
    def test_empty_or_symbol_only(self, payload):
        assert extract_code_or_token(payload) is None


class TestClaimResponse:
    """Outcome tags map to fixed messages and HTTP statuses."""

    def _card(self):
        return SimpleNamespace(summary=lambda: {"id": "c1", "name": "Ace"})

    def test_claimed_includes_card_summary(self):
        body, status = claim_response(ClaimResult(ClaimOutcome.CLAIMED, self._card()))

        assert status == 200
        assert body["success"] is True
        assert body["status"] == "claimed"
        assert body["message"] == "Added to your collection"
        assert body["card"]["name"] == "Ace"

    def test_already_owner_is_success(self):
        body, status = claim_response(ClaimResult(ClaimOutcome.ALREADY_OWNER, self._card()))

        assert status == 200
        assert body["success"] is True
        assert "card" in body

    def test_owned_by_other_hides_card(self):
        body, status = claim_response(ClaimResult(ClaimOutcome.OWNED_BY_OTHER, self._card()))

        assert status == 409
        assert body["success"] is False
        assert "card" not in body

    @pytest.mark.parametrize(
        "outcome,expected",
        [
            (ClaimOutcome.NOT_FOUND, 404),
            (ClaimOutcome.BLOCKED, 403),
            (ClaimOutcome.NOT_AUTHENTICATED, 401),
        ],
    )
    def test_failure_statuses(self, outcome, expected):
        body, status = claim_response(ClaimResult(outcome))

        assert status == expected
        assert body["message"] == STATUS_MESSAGES[outcome]

    def test_signed_out_goes_out_as_error(self):
        body, status = claim_response(ClaimResult(ClaimOutcome.NOT_AUTHENTICATED))

        assert status == 401
        assert body["success"] is False
        assert body["status"] == "error"
        assert body["message"] == "Authentication required"

    def test_other_tags_are_outcome_values(self):
        for outcome in ClaimOutcome:
            if outcome != ClaimOutcome.NOT_AUTHENTICATED:
                assert claim_response(ClaimResult(outcome))[0]["status"] == outcome.value

    def test_every_outcome_has_a_message(self):
        assert set(STATUS_MESSAGES) == set(ClaimOutcome)

    def test_error_response(self):
        body, status = error_response()

        assert status == 503
        assert body["status"] == "error"
