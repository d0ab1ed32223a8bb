# rewards_api.py
import logging

from flask import Blueprint, jsonify

import config
import pi_api
from api_helpers import json_body, text, error
from pi_api import PiApiError
from store import get_store

log = logging.getLogger(__name__)

bp_rewards = Blueprint("rewards_api", __name__, url_prefix="/functions")

REWARD_AMOUNT = 0.005   # π per rewarded ad
AD_TYPE = "rewarded"

def _stored_verdict(reward: dict):
    return jsonify(
        verified=(reward.get("status") == "granted"),
        reward_amount=reward.get("reward_amount"),
        status=reward.get("status"),
        message="Reward already processed",
    )

def _credit_merchant(st, merchant_id: str):
    """Best-effort: the ad_rewards row is already stored. Failures are logged."""
    try:
        if not st.credit_merchant(merchant_id, REWARD_AMOUNT):
            log.warning("AD_REWARD_CREDIT_NO_MERCHANT merchant=%s", merchant_id)
    except Exception as e:
        log.error("AD_REWARD_CREDIT_FAIL merchant=%s err=%s", merchant_id, e)

    try:
        st.insert_notification(
            merchant_id,
            "🎉 Ad Reward Earned!",
            f"You earned π{REWARD_AMOUNT:.4f} from watching an ad!",
        )
    except Exception as e:
        log.info("AD_REWARD_NOTIFY_SKIPPED merchant=%s err=%s", merchant_id, e)


@bp_rewards.route("/verify-ad-reward", methods=["POST"])
def verify_ad_reward():
    """
    Body: { adId, merchantId, piUsername }
    One reward per adId. A repeated call returns the stored verdict without
    asking the ads network again or crediting again.
    """
    api_key = config.pi_api_key()
    st = get_store()

    data = json_body() or {}
    ad_id = text(data, "adId")
    merchant_id = text(data, "merchantId")
    pi_username = text(data, "piUsername")
    if not ad_id or not merchant_id or not pi_username:
        return error("Missing required fields", 400)

    existing = st.get_ad_reward(ad_id)
    if existing:
        log.info("AD_REWARD_REPLAY ad=%s status=%s", ad_id, existing.get("status"))
        return _stored_verdict(existing)

    ack = {"mediator_ack_status": None, "mediator_granted_at": None, "mediator_revoked_at": None}
    try:
        ack = pi_api.fetch_ad_status(ad_id, api_key)
    except PiApiError as e:
        log.warning("AD_STATUS_FAIL ad=%s status=%s", ad_id, e.status)

    status = "granted" if ack.get("mediator_ack_status") == "granted" else "pending"

    reward, created = st.insert_ad_reward({
        "merchant_id": merchant_id,
        "pi_username": pi_username,
        "ad_type": AD_TYPE,
        "ad_id": ad_id,
        "reward_amount": REWARD_AMOUNT,
        "status": status,
        **ack,
    })
    if not created:
        # a concurrent call stored this ad first; its verdict stands
        log.info("AD_REWARD_CONFLICT ad=%s", ad_id)
        return _stored_verdict(reward)

    verified = status == "granted"
    if verified:
        _credit_merchant(st, merchant_id)

    log.info("AD_REWARD_STORED ad=%s merchant=%s status=%s", ad_id, merchant_id, status)
    return jsonify(
        verified=verified,
        reward_amount=REWARD_AMOUNT,
        status=status,
        message="Reward granted successfully!" if verified else "Reward pending verification",
    )
