"""Seller trust score lookup.

Trust scores are computed by a separate scoring service and stored in
seller_trust_scores; this module only reads them.
"""

import logging
from decimal import Decimal
from uuid import UUID

from database import get_pool

logger = logging.getLogger(__name__)

MIN_TRUST_SCORE = Decimal('0')
MAX_TRUST_SCORE = Decimal('100')

# Sellers without a score are treated as brand new sellers
NEW_SELLER_SCORE = Decimal('0')

def clamp_trust_score(score) -> Decimal:
    """Clamp a raw score into the 0-100 range."""
    value = Decimal(str(score))
    return max(MIN_TRUST_SCORE, min(MAX_TRUST_SCORE, value))

class TrustScoreProvider:
    """Interface for anything that can supply a seller's trust score."""

    async def get_trust_score(self, seller_id: UUID) -> Decimal:
        """Return the seller's current trust score on a 0-100 scale."""
        raise NotImplementedError

class DatabaseTrustScoreProvider(TrustScoreProvider):
    """Reads trust scores from the seller_trust_scores table."""

    def __init__(self, pool=None):
        self.pool = pool

    async def ensure_pool(self):
        """Ensure we have a database pool."""
        if not self.pool:
            self.pool = await get_pool()

    async def get_trust_score(self, seller_id: UUID) -> Decimal:
        await self.ensure_pool()
        async with self.pool.acquire() as conn:
            score = await conn.fetchval(
                'SELECT overall_score FROM seller_trust_scores WHERE seller_id = $1',
                seller_id
            )

        if score is None:
            logger.debug(f"No trust score for seller {seller_id}, using new seller default")
            return NEW_SELLER_SCORE
        return clamp_trust_score(score)
