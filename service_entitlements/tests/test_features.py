"""
Unit tests for the feature table.
"""

import pytest

from shared.errors import ValidationError
from service_entitlements.app.rules.features import FEATURE_TIERS, FeatureCatalog, parse_feature
from service_entitlements.app.rules.models import Feature, FeatureTier


class TestFeatureCatalog:
    """Test cases for FeatureCatalog."""

    def test_every_feature_is_classified(self):
        """The static table lists every known feature."""
        assert set(FEATURE_TIERS) == set(Feature)

    def test_default_free_allowlist(self):
        """Only subjects and forum are free by default."""
        catalog = FeatureCatalog()

        assert catalog.free_features() == frozenset({Feature.SUBJECTS, Feature.FORUM})
        assert catalog.is_premium(Feature.SOLUTION_BANK) is True
        assert catalog.is_premium(Feature.STUDENT_DASHBOARD) is True

    def test_unknown_feature_is_premium(self):
        """Features missing from the table are premium."""
        catalog = FeatureCatalog()

        assert catalog.tier_of("exam-simulator") == FeatureTier.PREMIUM
        assert catalog.is_free("exam-simulator") is False

    def test_partial_table_defaults_to_premium(self):
        """A table that omits a feature treats it as premium."""
        catalog = FeatureCatalog(tiers={Feature.SUBJECTS: FeatureTier.FREE})

        assert catalog.is_free(Feature.SUBJECTS) is True
        assert catalog.is_free(Feature.FORUM) is False

    def test_free_allowlist_override(self):
        """The allowlist can be replaced from configuration."""
        catalog = FeatureCatalog(free_features=["subjects", "forum", "resources"])

        assert catalog.is_free(Feature.RESOURCES) is True
        assert catalog.is_free(Feature.QUIZZES) is False

    def test_empty_override_makes_everything_premium(self):
        """An empty allowlist is honoured, not ignored."""
        catalog = FeatureCatalog(free_features=[])

        assert catalog.free_features() == frozenset()

    def test_override_with_unknown_feature_rejected(self):
        """Typos in the allowlist fail loudly."""
        with pytest.raises(ValidationError) as exc_info:
            FeatureCatalog(free_features=["subjects", "forums"])

        assert exc_info.value.details == {"feature": "forums"}

    def test_as_table(self):
        """The table view covers every feature."""
        table = FeatureCatalog().as_table()

        assert len(table) == len(Feature)
        assert table[Feature.FORUM] == FeatureTier.FREE
        assert table[Feature.HOMEWORK_HELP] == FeatureTier.PREMIUM

    @pytest.mark.parametrize("value,expected", [
        ("quizzes", Feature.QUIZZES),
        (" Quick-Help ", Feature.QUICK_HELP),
        (Feature.FORUM, Feature.FORUM),
        ("solution_bank", None),
    ])
    def test_parse_feature(self, value, expected):
        """Identifiers are matched case-insensitively."""
        assert parse_feature(value) is expected
