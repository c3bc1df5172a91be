"""
Lead Scorer & Pricer

Pure functions over buyer and listing data. No side effects, no clock reads:
the caller passes `now` when account age matters.
"""

from datetime import datetime
from decimal import Decimal

from ..models import Account, Listing
from .money import quantize_units


class LeadPricer:
    """Prices a lead from the listing's value and the buyer's verification tier."""

    # (exclusive upper bound in cents, base price in cents)
    PRICE_BRACKETS = [
        (1_000_000, 200),  # under €10,000
        (2_000_000, 300),  # under €20,000
        (5_000_000, 400),  # under €50,000
    ]
    TOP_BRACKET_PRICE = 500

    VERIFICATION_MULTIPLIERS = {
        "none": Decimal("1.0"),
        "phone": Decimal("1.1"),
        "id": Decimal("1.2"),
        "business": Decimal("1.3"),
        "bank": Decimal("1.4"),
        "full": Decimal("1.5"),
    }

    def base_price(self, listing_price: int) -> int:
        for upper_bound, price in self.PRICE_BRACKETS:
            if listing_price < upper_bound:
                return price
        return self.TOP_BRACKET_PRICE

    def multiplier(self, verification_tier: str | None) -> Decimal:
        return self.VERIFICATION_MULTIPLIERS.get(verification_tier or "none", Decimal("1.0"))

    def price(self, listing_price: int, verification_tier: str | None) -> int:
        """Lead price in cents, rounded to the nearest unit."""
        return quantize_units(self.base_price(listing_price) * self.multiplier(verification_tier))


class LeadScorer:
    """
    Scores a lead between 0 and 100.

    Four bounded contributions:
    - verification tier (0-40)
    - trust score scaled by 0.3 (0-30)
    - message quality: length bucket (0-20) + serious-intent keywords (0-10)
    - buyer account age (0-10)
    """

    VERIFICATION_POINTS = {
        "full": 40,
        "bank": 35,
        "business": 30,
        "id": 25,
        "phone": 15,
        "none": 5,
    }
    TRUST_WEIGHT = Decimal("0.3")
    MAX_TRUST_POINTS = 30

    # (exclusive lower bound on message length, points)
    MESSAGE_LENGTH_POINTS = [(200, 20), (100, 15), (50, 10), (20, 5)]
    SERIOUS_KEYWORDS = ("buy", "purchase", "interested", "financing", "cash", "viewing", "inspection")
    KEYWORD_POINTS = 2
    MAX_KEYWORD_POINTS = 10

    # (exclusive lower bound on account age in days, points)
    ACCOUNT_AGE_POINTS = [(365, 10), (180, 7), (90, 5), (30, 3)]

    def score(self, buyer: Account, listing: Listing | None, message: str | None, now: datetime) -> int:
        total = (
            self.verification_points(buyer.verification_tier)
            + self.trust_points(buyer.trust_score)
            + self.message_points(message)
            + self.account_age_points(buyer.created_at, now)
        )
        return min(100, max(0, total))

    def verification_points(self, tier: str | None) -> int:
        return self.VERIFICATION_POINTS.get(tier or "", 0)

    def trust_points(self, trust_score: int | float | None) -> int:
        if not trust_score or trust_score < 0:
            return 0
        return min(self.MAX_TRUST_POINTS, quantize_units(Decimal(str(trust_score)) * self.TRUST_WEIGHT))

    def message_points(self, message: str | None) -> int:
        if not message:
            return 0

        length_points = 0
        for threshold, points in self.MESSAGE_LENGTH_POINTS:
            if len(message) > threshold:
                length_points = points
                break

        lowered = message.lower()
        found = sum(1 for keyword in self.SERIOUS_KEYWORDS if keyword in lowered)
        keyword_points = min(self.MAX_KEYWORD_POINTS, found * self.KEYWORD_POINTS)

        return length_points + keyword_points

    def account_age_points(self, created_at: datetime | None, now: datetime) -> int:
        if created_at is None:
            return 0
        days_old = (now - created_at).total_seconds() / 86400
        for threshold, points in self.ACCOUNT_AGE_POINTS:
            if days_old > threshold:
                return points
        return 0
