"""
Affiliate attribution

Clicks, signups and purchases brought in by an affiliate are appended to the
``referral`` collection and folded into the affiliate's ``stats`` counters.
Tracking is best-effort: every tracker logs its own failure and returns None
so registration and checkout never fail because of it.
"""
import logging
import secrets
import string
from datetime import datetime, timezone
from typing import Optional

from bson import ObjectId
from pymongo import ReturnDocument

from database import db, create_document
from schemas import Referral, ReferralMetadata

logger = logging.getLogger(__name__)

DEFAULT_COMMISSION_RATE = 0.05
# (minimum total sales, rate), highest tier first
COMMISSION_TIERS = [
    (25, 0.10),
    (11, 0.075),
    (0, DEFAULT_COMMISSION_RATE),
]

CODE_LENGTH = 8
CODE_ALPHABET = string.ascii_uppercase + string.digits


def commission_rate_for(total_sales: int) -> float:
    for threshold, rate in COMMISSION_TIERS:
        if total_sales >= threshold:
            return rate
    return DEFAULT_COMMISSION_RATE


def conversion_rate(signups: int, clicks: int) -> float:
    if clicks > 0:
        return signups / clicks * 100
    return 0


def generate_affiliate_code() -> str:
    """Return an affiliate code not yet used by any affiliate."""
    while True:
        code = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
        if not db["affiliate"].find_one({"affiliate_code": code}):
            return code


def find_active_affiliate(code: Optional[str]) -> Optional[dict]:
    if not code:
        return None
    return db["affiliate"].find_one({
        "affiliate_code": code.strip().upper(),
        "status": "approved",
        "is_active": True,
    })


def _metadata(metadata: Optional[dict]) -> ReferralMetadata:
    return ReferralMetadata(**(metadata or {}))


def _refresh_conversion_rate(affiliate_id: ObjectId, attempts: int = 3) -> None:
    """Recompute stats.conversion_rate from the counters as they are now."""
    for _ in range(attempts):
        doc = db["affiliate"].find_one({"_id": affiliate_id}, {"stats": 1})
        if not doc:
            return
        stats = doc.get("stats") or {}
        clicks = stats.get("total_clicks", 0)
        signups = stats.get("total_signups", 0)
        # a counter that moves after the read triggers its own refresh
        res = db["affiliate"].update_one(
            {"_id": affiliate_id, "stats.total_clicks": clicks, "stats.total_signups": signups},
            {"$set": {"stats.conversion_rate": conversion_rate(signups, clicks)}},
        )
        if res.matched_count:
            return


def track_click(affiliate_code: str, metadata: Optional[dict] = None) -> Optional[dict]:
    try:
        affiliate = find_active_affiliate(affiliate_code)
        if not affiliate:
            return None

        referral = Referral(
            affiliate_id=str(affiliate["_id"]),
            affiliate_code=affiliate["affiliate_code"],
            type="click",
            metadata=_metadata(metadata),
        )
        referral_id = create_document("referral", referral)

        db["affiliate"].update_one(
            {"_id": affiliate["_id"]},
            {"$inc": {"stats.total_clicks": 1}, "$currentDate": {"updated_at": True}},
        )
        _refresh_conversion_rate(affiliate["_id"])
        return {"_id": referral_id, **referral.model_dump()}
    except Exception:
        logger.exception("Error tracking click for code %s", affiliate_code)
        return None


def track_signup(affiliate_code: str, user_id: str, metadata: Optional[dict] = None) -> Optional[dict]:
    try:
        affiliate = find_active_affiliate(affiliate_code)
        if not affiliate:
            return None

        referral = Referral(
            affiliate_id=str(affiliate["_id"]),
            affiliate_code=affiliate["affiliate_code"],
            type="signup",
            user_id=user_id,
            metadata=_metadata(metadata),
            status="confirmed",
        )
        referral_id = create_document("referral", referral)

        db["affiliate"].update_one(
            {"_id": affiliate["_id"]},
            {"$inc": {"stats.total_signups": 1}, "$currentDate": {"updated_at": True}},
        )
        _refresh_conversion_rate(affiliate["_id"])
        logger.info("Signup of user %s attributed to affiliate %s", user_id, affiliate["affiliate_code"])
        return {"_id": referral_id, **referral.model_dump()}
    except Exception:
        logger.exception("Error tracking signup for user %s", user_id)
        return None


def track_purchase(user_id: str, order_id: str, amount: float) -> Optional[dict]:
    try:
        signup = db["referral"].find_one(
            {"user_id": user_id, "type": "signup", "status": "confirmed"},
            sort=[("created_at", -1)],
        )
        if not signup:
            return None

        affiliate = db["affiliate"].find_one({"_id": ObjectId(signup["affiliate_id"])})
        if not affiliate:
            return None

        rate = affiliate.get("commission_rate", DEFAULT_COMMISSION_RATE)
        commission = amount * rate

        referral = Referral(
            affiliate_id=str(affiliate["_id"]),
            affiliate_code=affiliate["affiliate_code"],
            type="purchase",
            user_id=user_id,
            order_id=order_id,
            amount=amount,
            commission=commission,
            commission_rate=rate,
            status="confirmed",
        )
        referral_id = create_document("referral", referral)

        updated = db["affiliate"].find_one_and_update(
            {"_id": affiliate["_id"]},
            {
                "$inc": {
                    "stats.total_sales": 1,
                    "stats.total_earnings": commission,
                    "next_payout_amount": commission,
                },
                "$currentDate": {"updated_at": True},
            },
            return_document=ReturnDocument.AFTER,
        )
        if updated:
            sales = updated.get("stats", {}).get("total_sales", 0)
            db["affiliate"].update_one(
                {"_id": affiliate["_id"], "stats.total_sales": sales},
                {"$set": {"commission_rate": commission_rate_for(sales)}},
            )
        logger.info(
            "Purchase %s by user %s earned affiliate %s a commission of %s",
            order_id, user_id, affiliate["affiliate_code"], commission,
        )
        return {"_id": referral_id, **referral.model_dump()}
    except Exception:
        logger.exception("Error tracking purchase for order %s", order_id)
        return None


def settle_payout(affiliate_id: ObjectId) -> float:
    """Mark confirmed purchase referrals paid and reset the pending payout.

    Returns the amount that was owed.
    """
    affiliate = db["affiliate"].find_one({"_id": affiliate_id})
    if not affiliate:
        raise LookupError("Affiliate not found")
    owed = affiliate.get("next_payout_amount", 0)
    now = datetime.now(timezone.utc)
    db["referral"].update_many(
        {"affiliate_id": str(affiliate_id), "type": "purchase", "status": "confirmed"},
        {"$set": {"status": "paid", "paid_at": now, "updated_at": now}},
    )
    db["affiliate"].update_one(
        {"_id": affiliate_id},
        {"$inc": {"next_payout_amount": -owed}, "$set": {"last_payout_date": now, "updated_at": now}},
    )
    return owed
