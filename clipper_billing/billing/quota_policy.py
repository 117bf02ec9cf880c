"""
Tier to feature-limit mapping.

Pure lookup with no I/O. FREE and GRACE_PERIOD share the reference limits
from QuotaConfig; PREMIUM is unlimited for every feature (None).
"""

from clipper_billing.config import QuotaConfig
from clipper_billing.models.subscription import SubscriptionTier, normalize_tier
from clipper_billing.models.usage import FeatureLimits

UNLIMITED = FeatureLimits()


class QuotaPolicy:
    """
    Resolve FeatureLimits for a tier.

    Built once from configuration; every lookup afterwards is a dict access.
    """

    def __init__(self, config: QuotaConfig | None = None):
        config = config or QuotaConfig()

        restricted = FeatureLimits(
            clips=config.free_clips,
            files=config.free_files,
            words_per_clip=config.free_words_per_clip,
            focus_mode_minutes=config.free_focus_mode_minutes,
            compact_mode_minutes=config.free_compact_mode_minutes,
        )

        self._limits: dict[SubscriptionTier, FeatureLimits] = {
            SubscriptionTier.FREE: restricted,
            SubscriptionTier.GRACE_PERIOD: restricted,
            SubscriptionTier.PREMIUM: UNLIMITED,
        }

    def limits_for(self, tier: SubscriptionTier | str) -> FeatureLimits:
        """
        Get limits for a tier.

        Args:
            tier: Canonical tier or any accepted representation ('premium', ...)

        Returns:
            FeatureLimits: None in a field means unlimited

        Raises:
            ValueError: Unknown tier (programming error)
        """
        return self._limits[normalize_tier(tier)]

    def table(self) -> dict[SubscriptionTier, FeatureLimits]:
        """Full tier -> limits table (for pricing pages and diagnostics)."""
        return dict(self._limits)


def limits_for(tier: SubscriptionTier | str, config: QuotaConfig | None = None) -> FeatureLimits:
    """Limits for a tier using the given (or default) quota configuration."""
    return QuotaPolicy(config).limits_for(tier)
