import pytest

from haptic_range import RangeBand, classify


@pytest.mark.parametrize(
    "distance, band",
    [
        (0.0, RangeBand.CLOSE),
        (20.0, RangeBand.CLOSE),
        (20.0001, RangeBand.MEDIUM),
        (40.0, RangeBand.MEDIUM),
        (40.0001, RangeBand.FAR),
        (80.0, RangeBand.FAR),
        (80.0001, RangeBand.UNSPECIFIED),
        (200.0, RangeBand.UNSPECIFIED),
    ],
)
def test_boundaries(distance, band):
    assert classify(distance) is band
