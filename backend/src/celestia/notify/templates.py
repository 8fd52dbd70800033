"""Push notification copy for referral events."""

from dataclasses import dataclass, field
from typing import Any, Callable


@dataclass(frozen=True)
class PushMessage:
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)


def _referrer_reward(context: dict[str, Any]) -> PushMessage:
    days = context["days"]
    body = f"A friend you invited just started exploring the stars. Enjoy {days} extra days of Celestia+."
    remaining = context.get("remaining")
    next_tier = context.get("next_tier")
    if remaining and next_tier:
        plural = "referral" if remaining == 1 else "referrals"
        body += f" {remaining} more {plural} to reach {next_tier}."
    return PushMessage(
        title=f"You earned {days} free days ✨",
        body=body,
        data={"type": "referral_reward", "party": "referrer", "days": days, "url": "/referrals"},
    )


def _referred_reward(context: dict[str, Any]) -> PushMessage:
    days = context["days"]
    return PushMessage(
        title=f"{days} days of Celestia+ unlocked 🌙",
        body=f"Thanks for joining through a friend. Your {days}-day gift is active now.",
        data={"type": "referral_reward", "party": "referred", "days": days, "url": "/app"},
    )


def _tier_reached(context: dict[str, Any]) -> PushMessage:
    tier = context["tier"]
    days = context.get("bonus_days")
    body = f"You reached the {tier} referral tier."
    if days:
        body += f" {days} bonus days have been added to your subscription."
    return PushMessage(
        title=f"{tier} tier reached 🌕",
        body=body,
        data={"type": "referral_tier", "tier": tier, "url": "/referrals"},
    )


TEMPLATES: dict[str, Callable[[dict[str, Any]], PushMessage]] = {
    "referral_reward_referrer": _referrer_reward,
    "referral_reward_referred": _referred_reward,
    "referral_tier_reached": _tier_reached,
}


def render(template_key: str, context: dict[str, Any]) -> PushMessage:
    """Build the message for a template.

    Raises:
        KeyError: Unknown template or missing context value
    """
    return TEMPLATES[template_key](context)
