"""
shared/utils/mentors.py
Pure helpers deriving mentor state: profile completeness, onboarding step,
and category inference from an applicant's free-text topic.
"""

from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple

from shared.models.models import MentorCategory, OfferType


# ── Category Inference ───────────────────────────────────────

# Evaluated top to bottom; first rule with a matching keyword wins.
CATEGORY_RULES: Sequence[Tuple[Tuple[str, ...], MentorCategory]] = (
    (("trading", "stocks", "crypto", "forex", "invest"), MentorCategory.TRADING_INVESTING),
    (("game", "gaming", "valorant", "league", "cs", "esport", "rocket"), MentorCategory.GAMING_ESPORTS),
    (("stream", "twitch", "content", "youtube live"), MentorCategory.STREAMING_CONTENT),
    (("edit", "video", "youtube", "thumbnail", "production"), MentorCategory.YOUTUBE_PRODUCTION),
)
DEFAULT_CATEGORY = MentorCategory.STREAMING_CONTENT


def infer_category(topic: str) -> MentorCategory:
    """Substring match against CATEGORY_RULES, falling back to DEFAULT_CATEGORY."""
    lower = (topic or "").lower()
    for keywords, category in CATEGORY_RULES:
        if any(keyword in lower for keyword in keywords):
            return category
    return DEFAULT_CATEGORY


# ── Profile Completeness ─────────────────────────────────────

@dataclass
class CompletenessItem:
    key: str
    label: str
    completed: bool
    weight: float


@dataclass
class CompletenessResult:
    percentage: int
    items: List[CompletenessItem] = field(default_factory=list)

    @property
    def missing_fields(self) -> List[str]:
        return [i.key for i in self.items if not i.completed]

    @property
    def completed_fields(self) -> List[str]:
        return [i.key for i in self.items if i.completed]

    def as_dict(self) -> dict:
        return {
            "percentage": self.percentage,
            "missing_fields": self.missing_fields,
            "completed_fields": self.completed_fields,
        }


def _filled(value: Optional[str]) -> bool:
    return bool(value and value.strip())


def _offer(mentor: Any) -> Optional[str]:
    offer = getattr(mentor, "offer_type", None)
    return offer.value if isinstance(offer, OfferType) else offer


def calculate_profile_completeness(mentor: Any) -> CompletenessResult:
    """
    Weighted checklist over the mentor's profile fields.
    Pricing items only count toward the total for the offer types that need them.
    """
    items = [
        CompletenessItem("name", "Name", _filled(mentor.name), 10),
        CompletenessItem("tagline", "Tagline", _filled(mentor.tagline), 10),
        CompletenessItem("bio", "Bio", bool(mentor.bio and len(mentor.bio.strip()) >= 100), 15),
        CompletenessItem("profile_image", "Profile Photo", bool(mentor.profile_image), 10),
        CompletenessItem("category", "Category", bool(mentor.category), 10),
        CompletenessItem("social_links", "Social Links", bool(mentor.social_links), 5),
        CompletenessItem("stripe", "Payment Setup", bool(mentor.stripe_onboarded), 20),
        CompletenessItem("timezone", "Timezone", bool(mentor.timezone), 5),
    ]

    offer = _offer(mentor)
    if offer in (OfferType.ACCESS.value, OfferType.BOTH.value):
        items.append(CompletenessItem("access_price", "Access Price", bool(mentor.access_price), 7.5))
    if offer in (OfferType.TIME.value, OfferType.BOTH.value):
        items.append(CompletenessItem("hourly_rate", "Hourly Rate", bool(mentor.hourly_rate), 7.5))

    total = sum(i.weight for i in items)
    earned = sum(i.weight for i in items if i.completed)
    percentage = round(earned / total * 100) if total else 0
    return CompletenessResult(percentage=percentage, items=items)


# ── Onboarding ───────────────────────────────────────────────

ONBOARDING_STEPS = (
    (1, "Basic Information"),
    (2, "Profile Details"),
    (3, "Pricing & Offers"),
    (4, "Availability"),
    (5, "Payment Setup"),
)
ONBOARDING_DONE = 6


def onboarding_steps(mentor: Any, has_availability: bool = False) -> List[dict]:
    offer = _offer(mentor)
    checks = {
        1: bool(mentor.name and mentor.category and mentor.tagline),
        2: bool(mentor.bio and len(mentor.bio) >= 50 and mentor.profile_image),
        3: bool(offer and (mentor.access_price or mentor.hourly_rate)),
        4: offer == OfferType.ACCESS.value or has_availability,
        5: bool(mentor.stripe_onboarded),
    }
    return [
        {"step": step, "title": title, "is_complete": checks[step]}
        for step, title in ONBOARDING_STEPS
    ]


def current_onboarding_step(mentor: Any, has_availability: bool = False) -> int:
    """First incomplete step, or ONBOARDING_DONE when every step is complete."""
    for step in onboarding_steps(mentor, has_availability):
        if not step["is_complete"]:
            return step["step"]
    return ONBOARDING_DONE
