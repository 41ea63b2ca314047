"""
Status Mapping Tests
Legacy names, canonical resolution and public grouping
"""

import pytest

from models import RiftStatus
from services.legacy_status_mapper import LegacyStatusMapper, PublicStatus
from utils.exceptions import ValidationError

S = RiftStatus


class TestCanonicalResolution:

    @pytest.mark.parametrize("name, expected", [
        ("funded", S.FUNDED),
        ("FUNDED", S.FUNDED),
        ("  in_transit ", S.IN_TRANSIT),
        ("canceled", S.CANCELLED),
        ("COMPLETED", S.RELEASED),
        ("Paid", S.FUNDED),
        ("under_dispute", S.DISPUTED),
    ])
    def test_names_and_aliases(self, name, expected):
        assert LegacyStatusMapper.to_canonical(name) is expected

    def test_enum_passes_through(self):
        assert LegacyStatusMapper.to_canonical(S.REFUNDED) is S.REFUNDED

    @pytest.mark.parametrize("name", ["", "shipped_maybe", None, 42])
    def test_unknown_names_rejected(self, name):
        with pytest.raises(ValidationError):
            LegacyStatusMapper.to_canonical(name)

    def test_legacy_names_for(self):
        assert LegacyStatusMapper.legacy_names_for(S.RELEASED) == ["COMPLETED"]
        assert LegacyStatusMapper.legacy_names_for("cancelled") == ["CANCELED"]
        assert LegacyStatusMapper.legacy_names_for(S.DRAFT) == []


class TestPublicGrouping:

    def test_every_status_has_a_group(self):
        LegacyStatusMapper.validate_mapping_completeness()
        for status in RiftStatus:
            assert isinstance(LegacyStatusMapper.to_public(status), PublicStatus)

    @pytest.mark.parametrize("status, expected", [
        ("awaiting_payment", PublicStatus.PENDING),
        ("under_review", PublicStatus.IN_PROGRESS),
        ("disputed", PublicStatus.ON_HOLD),
        ("payout_scheduled", PublicStatus.COMPLETED),
        ("refunded", PublicStatus.REFUNDED),
        ("COMPLETED", PublicStatus.COMPLETED),
    ])
    def test_public_status(self, status, expected):
        assert LegacyStatusMapper.to_public(status) is expected
