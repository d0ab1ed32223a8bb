from unittest import mock

import pytest

from conftest import FakeResponse, tx_body

URL = "/functions/verify-payment"


def _verify(client, body, **payload):
    with mock.patch("pi_api.requests.get", return_value=FakeResponse(200, body)) as get:
        r = client.post(URL, json={"txid": "tx1", **payload})
    return r, get


@pytest.mark.parametrize("amount, expected_match", [
    ("10.00000005", True),
    ("10.001", False),
])
def test_amount_tolerance(client, amount, expected_match):
    r, _ = _verify(client, tx_body(amount=amount), expectedAmount=10)
    body = r.get_json()
    assert body["checks"]["amountMatch"] is expected_match
    assert body["verified"] is expected_match


def test_receiver_check_skipped_without_wallet(client):
    r, _ = _verify(client, tx_body(to="GSOMEONEELSE"), expectedAmount=10)
    assert r.get_json()["checks"]["receiverMatch"] is True


def test_receiver_mismatch(client):
    r, _ = _verify(client, tx_body(to="GSOMEONEELSE"), expectedAmount=10,
                   merchantWallet="GMERCHANTWALLET")
    body = r.get_json()
    assert body["checks"]["receiverMatch"] is False
    assert body["verified"] is False


def test_unsuccessful_transaction_never_verifies(client):
    r, _ = _verify(client, tx_body(successful=False), expectedAmount=10,
                   merchantWallet="gmerchantwallet")
    body = r.get_json()
    assert body["checks"] == {"amountMatch": True, "receiverMatch": True, "transactionSuccess": False}
    assert body["verified"] is False
    assert body["transaction"]["status"] == "pending"


def test_verified_row_is_completed(client, st, seed):
    row = seed.transaction(txid="tx1", payment_link_id="L1", amount=10)
    r, _ = _verify(client, tx_body(), expectedAmount=10, merchantWallet="GMERCHANTWALLET",
                   paymentLinkId="L1")
    body = r.get_json()
    assert body["verified"] is True
    assert body["transaction"] == {
        "txid": "tx1", "sender": "GPAYERWALLET", "receiver": "GMERCHANTWALLET",
        "amount": 10.0, "status": "confirmed", "blockHeight": 4242,
    }
    fresh = st.find_transactions_by_txid("tx1")[0]
    assert fresh["id"] == row["id"]
    assert fresh["status"] == "completed"
    assert fresh["blockchain_verified"] is True
    assert fresh["sender_address"] == "GPAYERWALLET"
    assert fresh["receiver_address"] == "GMERCHANTWALLET"


def test_unverified_row_stays_pending(client, st, seed):
    seed.transaction(txid="tx1", payment_link_id="L1")
    _verify(client, tx_body(amount="3"), expectedAmount=10, paymentLinkId="L1")
    fresh = st.find_transactions_by_txid("tx1")[0]
    assert fresh["status"] == "pending"
    assert fresh["blockchain_verified"] is False
    assert fresh["receiver_address"] == "GMERCHANTWALLET"


def test_checkout_row_matched_by_metadata(client, st, seed):
    link_row = seed.transaction(txid="tx1", payment_link_id="L1",
                                created_at="2026-01-01T00:00:02+00:00")
    checkout_row = seed.transaction(txid="tx1", payment_link_id=None,
                                    metadata={"source_link_id": "C1"},
                                    created_at="2026-01-01T00:00:01+00:00")
    _verify(client, tx_body(), expectedAmount=10, paymentLinkId="C1")
    rows = {row["id"]: row for row in st.find_transactions_by_txid("tx1")}
    assert rows[checkout_row["id"]]["status"] == "completed"
    assert rows[link_row["id"]]["status"] == "pending"


def test_most_recent_row_without_link(client, st, seed):
    old = seed.transaction(txid="tx1", created_at="2026-01-01T00:00:01+00:00")
    new = seed.transaction(txid="tx1", created_at="2026-01-01T00:00:05+00:00")
    _verify(client, tx_body(), expectedAmount=10)
    rows = {row["id"]: row for row in st.find_transactions_by_txid("tx1")}
    assert rows[new["id"]]["status"] == "completed"
    assert rows[old["id"]]["status"] == "pending"


def test_not_found_upstream(client, st, seed):
    seed.transaction(txid="tx1")
    with mock.patch("pi_api.requests.get", return_value=FakeResponse(404, text="no such tx")) as get:
        r = client.post(URL, json={"txid": "tx1", "expectedAmount": 10})
    assert r.status_code == 200
    body = r.get_json()
    assert body["verified"] is False
    assert body["details"] == "no such tx"
    assert get.call_count == 1
    assert st.find_transactions_by_txid("tx1")[0]["sender_address"] is None


def test_upstream_error_is_502(client):
    with mock.patch("pi_api.requests.get", return_value=FakeResponse(500, text="oops")):
        r = client.post(URL, json={"txid": "tx1", "expectedAmount": 10})
    assert r.status_code == 502
    assert r.get_json()["verified"] is False
    assert r.get_json()["details"] == "oops"


def test_missing_store_credentials(client, monkeypatch):
    monkeypatch.setenv("STORE_BACKEND", "supabase")
    with mock.patch("pi_api.requests.get") as get:
        r = client.post(URL, json={"txid": "tx1", "expectedAmount": 10})
    assert r.status_code == 500
    assert r.get_json()["verified"] is False
    get.assert_not_called()


def test_requires_txid(client):
    r = client.post(URL, json={"expectedAmount": 10})
    assert r.status_code == 400


def test_malformed_operation_does_not_break_verification(client):
    body = tx_body()
    body["operations"].insert(0, "not-an-operation")
    r, _ = _verify(client, body, expectedAmount=10)
    assert r.status_code == 200
    assert r.get_json()["verified"] is True
