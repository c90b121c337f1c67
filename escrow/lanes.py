"""Sale lane routing.

A sale settles either through the instant lane (no physical verification) or
through escrow verification, where the card is locked until it has been
inspected. Routing depends only on the seller's trust score, the card value
and the configured thresholds:

    instant              trust_score >= trust_threshold AND card_value < value_threshold
    escrow_verification  otherwise

Trust gates independently of value: a low-trust seller is routed through
verification even for a cheap card.
"""

import logging
from dataclasses import dataclass, asdict
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional
from uuid import UUID

from config import settings_conf
from .trust import TrustScoreProvider, DatabaseTrustScoreProvider, clamp_trust_score

logger = logging.getLogger(__name__)

INSTANT = 'instant'
ESCROW_VERIFICATION = 'escrow_verification'

@dataclass(frozen=True)
class LaneThresholds:
    """Tunable routing thresholds."""

    trust_threshold: Decimal = Decimal('80')
    value_threshold: Decimal = Decimal('500')

    @classmethod
    def from_settings(cls, settings: Optional[Dict[str, Any]] = None) -> 'LaneThresholds':
        """Build thresholds from loaded settings."""
        settings = settings if settings is not None else settings_conf
        return cls(
            trust_threshold=Decimal(str(settings['instant_trust_threshold'])),
            value_threshold=Decimal(str(settings['instant_value_threshold']))
        )

@dataclass(frozen=True)
class LaneDecision:
    """Routing decision for one prospective sale."""

    lane: str
    reason: str
    requires_verification: bool
    seller_trust_score: Decimal
    # Whether the seller's trust alone would allow instant settlement
    instant_eligible: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

def parse_card_value(card_value) -> Decimal:
    """Convert a card value to Decimal, rejecting negative or non-finite values."""
    try:
        value = Decimal(str(card_value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError(f"Invalid card value: {card_value}")
    if not value.is_finite():
        raise ValueError(f"Invalid card value: {card_value}")
    if value < 0:
        raise ValueError("Card value cannot be negative")
    return value

def decide_lane(trust_score, card_value, thresholds: LaneThresholds) -> LaneDecision:
    """Decide the settlement lane.

    Pure function: identical inputs always give an identical decision.

    Args:
        trust_score: Seller trust score (clamped to 0-100)
        card_value: Card value in currency units
        thresholds: Routing thresholds

    Returns:
        LaneDecision

    Raises:
        ValueError: If card_value is negative or not a number
    """
    score = clamp_trust_score(trust_score)
    value = parse_card_value(card_value)

    trusted = score >= thresholds.trust_threshold
    low_value = value < thresholds.value_threshold

    if trusted and low_value:
        return LaneDecision(
            lane=INSTANT,
            reason=(
                f"Seller trust score {score} meets the instant threshold "
                f"{thresholds.trust_threshold} and card value {value} is below "
                f"{thresholds.value_threshold}"
            ),
            requires_verification=False,
            seller_trust_score=score,
            instant_eligible=True
        )

    if not trusted and not low_value:
        reason = (
            f"Seller trust score {score} is below {thresholds.trust_threshold} "
            f"and card value {value} is at or above {thresholds.value_threshold}"
        )
    elif not trusted:
        reason = (
            f"Seller trust score {score} is below the instant threshold "
            f"{thresholds.trust_threshold}"
        )
    else:
        reason = (
            f"Card value {value} is at or above the verification threshold "
            f"{thresholds.value_threshold}"
        )

    return LaneDecision(
        lane=ESCROW_VERIFICATION,
        reason=reason,
        requires_verification=True,
        seller_trust_score=score,
        instant_eligible=trusted
    )

class LaneDecisionEngine:
    """Determines the sale lane for a seller and card.

    Reads the seller's trust score and never writes, so it is safe to call
    as a preview before locking a card.
    """

    def __init__(
        self,
        trust_provider: Optional[TrustScoreProvider] = None,
        thresholds: Optional[LaneThresholds] = None
    ):
        self.trust_provider = trust_provider or DatabaseTrustScoreProvider()
        self.thresholds = thresholds or LaneThresholds.from_settings()

    async def determine_lane(
        self,
        seller_id: UUID,
        card_value,
        card_instance_id: Optional[UUID] = None
    ) -> LaneDecision:
        """Determine the sale lane.

        Args:
            seller_id: Selling user
            card_value: Card value in currency units
            card_instance_id: Card being sold (for logging only)

        Returns:
            LaneDecision

        Raises:
            ValueError: If card_value is invalid
        """
        value = parse_card_value(card_value)
        trust_score = await self.trust_provider.get_trust_score(seller_id)
        decision = decide_lane(trust_score, value, self.thresholds)
        logger.info(
            f"Lane for seller {seller_id} card {card_instance_id}: "
            f"{decision.lane} (trust {decision.seller_trust_score}, value {value})"
        )
        return decision
