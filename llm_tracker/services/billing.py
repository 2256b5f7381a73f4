# llm_tracker/services/billing.py

import logging
from datetime import datetime
from typing import Any, Dict, Optional

import stripe
from sqlalchemy.orm import Session

from llm_tracker import config
from llm_tracker.models.subscription_models import Subscriber
from llm_tracker.models.user_models import User, Profile
from llm_tracker.services.plans import PAID_PLANS, apply_plan

logger = logging.getLogger(__name__)


class PaymentsNotConfigured(RuntimeError):
    pass


def _ensure_stripe() -> None:
    if not config.STRIPE_SECRET_KEY:
        raise PaymentsNotConfigured("Payment system not configured. Contact support.")
    stripe.api_key = config.STRIPE_SECRET_KEY


def plan_prices() -> Dict[str, Optional[str]]:
    return {
        "basic": config.STRIPE_PRICE_BASIC,
        "gold": config.STRIPE_PRICE_GOLD,
    }


def tier_for_price(price_id: Optional[str]) -> Optional[str]:
    for plan, price in plan_prices().items():
        if price and price == price_id:
            return plan
    return None


def _from_timestamp(ts: Optional[int]) -> Optional[datetime]:
    return datetime.utcfromtimestamp(ts) if ts else None


def _field(obj: Any, key: str) -> Any:
    """
    `key` of a StripeObject or plain dict, None when absent. StripeObject
    has no `.get()` from stripe 15 on.
    """
    try:
        return obj[key]
    except KeyError:
        return None


def _subscription_price_and_end(subscription: Any):
    """
    Price id and period end of a subscription. Newer API versions keep
    current_period_end on the subscription item instead.
    """
    items = _field(_field(subscription, "items") or {}, "data") or []
    first_item = items[0] if items else {}
    price_id = _field(_field(first_item, "price") or {}, "id")
    period_end = _field(subscription, "current_period_end") or _field(first_item, "current_period_end")
    return price_id, _from_timestamp(period_end)


def find_customer_id(email: str) -> Optional[str]:
    _ensure_stripe()
    customers = stripe.Customer.list(email=email, limit=1)
    data = _field(customers, "data") or []
    return data[0]["id"] if data else None


def get_subscriber(db: Session, user: User) -> Optional[Subscriber]:
    return (
        db.query(Subscriber)
        .filter(Subscriber.user_id == user.id)
        .one_or_none()
    )


def _upsert_subscriber(db: Session, user: User, **fields) -> Subscriber:
    subscriber = get_subscriber(db, user)
    if not subscriber:
        subscriber = Subscriber(user_id=user.id, email=user.email)
        db.add(subscriber)
    for key, value in fields.items():
        setattr(subscriber, key, value)
    return subscriber


def downgrade_to_trial(profile: Profile) -> None:
    """
    Drop a paid profile back to trial limits. The original trial end date is
    kept, so an old account lands on an expired trial.
    """
    apply_plan(profile, "trial")
    profile.plan_expires_at = None
    if profile.trial_ends_at is None:
        profile.trial_ends_at = datetime.utcnow()


def create_checkout_session(db: Session, user: User, plan: str) -> str:
    """
    Subscription-mode Checkout Session for `plan`. Returns the hosted URL.
    """
    if plan not in PAID_PLANS:
        raise ValueError(f"Unknown plan: {plan}")
    _ensure_stripe()

    price_id = plan_prices()[plan]
    if not price_id:
        raise PaymentsNotConfigured(f"No Stripe price configured for the {plan} plan.")

    customer_id = find_customer_id(user.email)

    checkout_params: Dict[str, Any] = {
        "line_items": [{"price": price_id, "quantity": 1}],
        "mode": "subscription",
        "success_url": f"{config.FRONTEND_URL}/subscription?success=true",
        "cancel_url": f"{config.FRONTEND_URL}/subscription?canceled=true",
        "client_reference_id": user.id,
        "metadata": {"user_id": user.id, "plan": plan},
    }
    if customer_id:
        checkout_params["customer"] = customer_id
    else:
        checkout_params["customer_email"] = user.email

    session = stripe.checkout.Session.create(**checkout_params)
    logger.info("Created checkout session for user %s (%s)", user.id, plan)
    return session["url"]


def create_portal_session(db: Session, user: User) -> Optional[str]:
    """
    Billing portal URL, or None when the user has never been a customer.
    """
    _ensure_stripe()

    subscriber = get_subscriber(db, user)
    customer_id = subscriber.stripe_customer_id if subscriber else None
    if not customer_id:
        customer_id = find_customer_id(user.email)
    if not customer_id:
        return None

    session = stripe.billing_portal.Session.create(
        customer=customer_id,
        return_url=f"{config.FRONTEND_URL}/subscription",
    )
    return session["url"]


def sync_subscription(db: Session, user: User, profile: Profile) -> Dict[str, Any]:
    """
    Pull the user's active subscription from Stripe and mirror it onto
    Subscriber + Profile.
    """
    _ensure_stripe()

    customer_id = find_customer_id(user.email)
    if not customer_id:
        _upsert_subscriber(
            db, user,
            stripe_customer_id=None,
            subscribed=False,
            subscription_tier=None,
            subscription_end=None,
        )
        if profile.plan in PAID_PLANS:
            downgrade_to_trial(profile)
        db.commit()
        return {"subscribed": False, "subscription_tier": None, "subscription_end": None}

    subscriptions = stripe.Subscription.list(customer=customer_id, status="active", limit=1)
    data = _field(subscriptions, "data") or []

    tier = None
    end = None
    if data:
        price_id, end = _subscription_price_and_end(data[0])
        tier = tier_for_price(price_id)
        if tier is None:
            logger.warning("Active subscription for %s has unknown price %s", user.id, price_id)

    subscribed = tier is not None
    _upsert_subscriber(
        db, user,
        stripe_customer_id=customer_id,
        subscribed=subscribed,
        subscription_tier=tier,
        subscription_end=end,
    )

    if subscribed:
        apply_plan(profile, tier)
        profile.plan_expires_at = end
    elif profile.plan in PAID_PLANS:
        downgrade_to_trial(profile)

    db.commit()
    return {"subscribed": subscribed, "subscription_tier": tier, "subscription_end": end}


def construct_event(payload: bytes, sig_header: Optional[str]):
    """
    Verify and decode a webhook. Raises ValueError on a bad payload and
    stripe.SignatureVerificationError on a bad signature.
    """
    if not config.STRIPE_WEBHOOK_SECRET:
        raise PaymentsNotConfigured("Stripe webhook secret not configured.")
    return stripe.Webhook.construct_event(payload, sig_header, config.STRIPE_WEBHOOK_SECRET)


def _subscriber_by_customer(db: Session, customer_id: Optional[str]) -> Optional[Subscriber]:
    if not customer_id:
        return None
    return (
        db.query(Subscriber)
        .filter(Subscriber.stripe_customer_id == customer_id)
        .one_or_none()
    )


def _profile_for(db: Session, user_id: str) -> Optional[Profile]:
    return db.query(Profile).filter(Profile.id == user_id).one_or_none()


def handle_webhook_event(db: Session, event: Dict[str, Any]) -> str:
    """
    Apply a verified Stripe event. Returns a short description of what was
    done (for logging / the response body).
    """
    event_type = event["type"]
    obj = event["data"]["object"]

    if event_type == "checkout.session.completed":
        metadata = _field(obj, "metadata") or {}
        user_id = _field(obj, "client_reference_id") or _field(metadata, "user_id")
        plan = _field(metadata, "plan")
        user = db.query(User).filter(User.id == user_id).one_or_none() if user_id else None
        if not user or plan not in PAID_PLANS:
            logger.warning("Checkout completed for unknown user/plan: %s/%s", user_id, plan)
            return "ignored"

        _upsert_subscriber(
            db, user,
            stripe_customer_id=_field(obj, "customer"),
            subscribed=True,
            subscription_tier=plan,
        )
        profile = _profile_for(db, user.id)
        if profile:
            apply_plan(profile, plan)
        db.commit()
        logger.info("Activated %s plan for user %s", plan, user.id)
        return "activated"

    if event_type == "customer.subscription.updated":
        subscriber = _subscriber_by_customer(db, _field(obj, "customer"))
        if not subscriber:
            return "ignored"

        price_id, end = _subscription_price_and_end(obj)
        tier = tier_for_price(price_id)
        profile = _profile_for(db, subscriber.user_id)

        if _field(obj, "status") in ("active", "trialing") and tier:
            subscriber.subscribed = True
            subscriber.subscription_tier = tier
            subscriber.subscription_end = end
            if profile:
                apply_plan(profile, tier)
                profile.plan_expires_at = end
        else:
            subscriber.subscribed = False
            subscriber.subscription_tier = None
            subscriber.subscription_end = end
            if profile and profile.plan in PAID_PLANS:
                downgrade_to_trial(profile)
        db.commit()
        return "updated"

    if event_type == "customer.subscription.deleted":
        subscriber = _subscriber_by_customer(db, _field(obj, "customer"))
        if not subscriber:
            return "ignored"

        subscriber.subscribed = False
        subscriber.subscription_tier = None
        subscriber.subscription_end = None
        profile = _profile_for(db, subscriber.user_id)
        if profile:
            downgrade_to_trial(profile)
        db.commit()
        logger.info("Subscription cancelled for user %s", subscriber.user_id)
        return "cancelled"

    return "ignored"
