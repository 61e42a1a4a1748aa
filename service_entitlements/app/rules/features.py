"""
Static feature-to-tier table.

The table is configuration: every feature is listed explicitly and the
free allowlist can be overridden (``ACCESS_FREE_FEATURES``) without touching
the resolver. Anything not classified here is premium.
"""

from typing import Dict, FrozenSet, Iterable, Optional, Union

from shared.logging import get_logger
from shared.errors import ValidationError
from .models import Feature, FeatureTier


FEATURE_TIERS: Dict[Feature, FeatureTier] = {
    Feature.SUBJECTS: FeatureTier.FREE,
    Feature.FORUM: FeatureTier.FREE,
    Feature.QUIZZES: FeatureTier.PREMIUM,
    Feature.FLASHCARDS: FeatureTier.PREMIUM,
    Feature.RESOURCES: FeatureTier.PREMIUM,
    Feature.SOLUTION_BANK: FeatureTier.PREMIUM,
    Feature.HOMEWORK_HELP: FeatureTier.PREMIUM,
    Feature.QUICK_HELP: FeatureTier.PREMIUM,
    Feature.STUDENT_DASHBOARD: FeatureTier.PREMIUM,
}


def parse_feature(value: Union[str, Feature]) -> Optional[Feature]:
    """Return the Feature for an identifier, or None when it is unknown."""
    if isinstance(value, Feature):
        return value
    try:
        return Feature(str(value).strip().lower())
    except ValueError:
        return None


class FeatureCatalog:
    """Auditable view over the feature table."""

    def __init__(self,
                 tiers: Optional[Dict[Feature, FeatureTier]] = None,
                 free_features: Optional[Iterable[Union[str, Feature]]] = None):
        self.logger = get_logger("entitlements.features")
        self._tiers: Dict[Feature, FeatureTier] = dict(FEATURE_TIERS if tiers is None else tiers)

        if free_features is not None:
            overrides = []
            for item in free_features:
                feature = parse_feature(item)
                if feature is None:
                    raise ValidationError(
                        "Unknown feature in free allowlist",
                        details={"feature": str(item)}
                    )
                overrides.append(feature)

            self._tiers = {
                feature: (FeatureTier.FREE if feature in overrides else FeatureTier.PREMIUM)
                for feature in Feature
            }
            self.logger.info("Free allowlist overridden", free_features=[f.value for f in overrides])

    def tier_of(self, feature: Union[str, Feature]) -> FeatureTier:
        """Tier for a feature; unknown or unclassified features are premium."""
        parsed = parse_feature(feature)
        if parsed is None or parsed not in self._tiers:
            self.logger.warning("Unclassified feature treated as premium", feature=str(feature))
            return FeatureTier.PREMIUM
        return self._tiers[parsed]

    def is_free(self, feature: Union[str, Feature]) -> bool:
        return self.tier_of(feature) is FeatureTier.FREE

    def is_premium(self, feature: Union[str, Feature]) -> bool:
        return not self.is_free(feature)

    def free_features(self) -> FrozenSet[Feature]:
        return frozenset(f for f, tier in self._tiers.items() if tier is FeatureTier.FREE)

    def as_table(self) -> Dict[Feature, FeatureTier]:
        return {feature: self.tier_of(feature) for feature in Feature}
