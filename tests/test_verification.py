from decimal import Decimal

from pi_api import TxSuccess
from verification import (
    amount_matches, receiver_matches, run_checks, pick_transaction_row, verification_update,
)


def _tx(amount="10", receiver="GMERCHANT", successful=True):
    return TxSuccess(txid="t1", sender="GPAYER", receiver=receiver,
                     amount=Decimal(amount), successful=successful)


class TestAmount:
    def test_within_tolerance(self):
        assert amount_matches(Decimal("10.00000005"), 10) is True

    def test_outside_tolerance(self):
        assert amount_matches(Decimal("10.001"), 10) is False

    def test_exact_tolerance_is_not_a_match(self):
        assert amount_matches(Decimal("10.0000001"), 10) is False

    def test_string_expected_amount(self):
        assert amount_matches(Decimal("3.1415926"), "3.1415926") is True

    def test_missing_expected_amount(self):
        assert amount_matches(Decimal("10"), None) is False


class TestReceiver:
    def test_skipped_without_wallet(self):
        assert receiver_matches("GANYTHING", None) is True
        assert receiver_matches("", "") is True

    def test_case_insensitive(self):
        assert receiver_matches("gmerchant", "GMERCHANT") is True

    def test_mismatch(self):
        assert receiver_matches("GOTHER", "GMERCHANT") is False


def test_unsuccessful_transaction_fails_even_when_rest_matches():
    checks = run_checks(_tx(successful=False), 10, "GMERCHANT")
    assert checks == {"amountMatch": True, "receiverMatch": True, "transactionSuccess": False}
    assert not all(checks.values())


def test_all_checks_pass():
    assert all(run_checks(_tx(), 10, "gmerchant").values())


class TestPickRow:
    rows = [
        {"id": "newest", "payment_link_id": None, "metadata": {"source_link_id": "C1"}},
        {"id": "older", "payment_link_id": "L1", "metadata": {"source_link_id": "L1"}},
    ]

    def test_most_recent_without_link(self):
        assert pick_transaction_row(self.rows, None)["id"] == "newest"

    def test_by_payment_link_id(self):
        assert pick_transaction_row(self.rows, "L1")["id"] == "older"

    def test_by_metadata_source_link(self):
        assert pick_transaction_row(self.rows, "C1")["id"] == "newest"

    def test_no_match(self):
        assert pick_transaction_row(self.rows, "nope") is None

    def test_empty(self):
        assert pick_transaction_row([], "L1") is None


def test_update_never_sets_failed():
    upd = verification_update(_tx(), False)
    assert "status" not in upd
    assert upd["blockchain_verified"] is False
    assert verification_update(_tx(), True)["status"] == "completed"
